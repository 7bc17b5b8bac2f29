import base64
from typing import Optional, Protocol
from xml.sax.saxutils import escape

from .schemas import ImageResult


class ImageSynthesizer(Protocol):
    def synthesize(self, prompt: str, anchor_title: Optional[str] = None) -> ImageResult:
        ...


class PlaceholderImageSynthesizer:
    """Deterministic SVG card that embeds the prompt; stands in for a real image model."""

    width = 400
    height = 225

    def synthesize(self, prompt: str, anchor_title: Optional[str] = None) -> ImageResult:
        text = (prompt or "").strip() or "Channel visual"
        caption = f"Inspired by: {anchor_title[:40]}" if anchor_title else "Generated concept"
        svg = (
            f'<svg xmlns="http://www.w3.org/2000/svg" width="{self.width}" height="{self.height}" '
            f'viewBox="0 0 {self.width} {self.height}">'
            '<defs><linearGradient id="g" x1="0%" y1="0%" x2="100%" y2="100%">'
            '<stop offset="0%" style="stop-color:#ff6b6b"/><stop offset="100%" style="stop-color:#4ecdc4"/>'
            "</linearGradient></defs>"
            f'<rect width="{self.width}" height="{self.height}" fill="url(#g)"/>'
            '<text x="200" y="110" text-anchor="middle" fill="white" font-family="sans-serif" font-size="14">'
            f"{escape(text[:40])}</text>"
            '<text x="200" y="130" text-anchor="middle" fill="rgba(255,255,255,0.8)" '
            f'font-family="sans-serif" font-size="10">{escape(caption)}</text>'
            "</svg>"
        )
        data = base64.b64encode(svg.encode("utf-8")).decode("ascii")
        return ImageResult(data=data, mime_type="image/svg+xml", prompt=text)
