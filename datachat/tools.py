import logging
from typing import Any, Dict, List, Optional, Union

from . import catalog_tools, tabular
from .errors import ToolResolutionError
from .images import ImageSynthesizer, PlaceholderImageSynthesizer
from .schemas import ChannelDataset, ErrorResult
from .tabular import TabularDataset

logger = logging.getLogger("uvicorn.error")

Dataset = Union[ChannelDataset, TabularDataset, List[Dict[str, Any]], None]

IMAGE_TOOL = "generateImage"


def _required_params(declarations: List[Dict[str, Any]], name: str) -> List[str]:
    for decl in declarations:
        if decl.get("name") == name:
            return list(decl.get("parameters", {}).get("required", []))
    return []


class ToolEngine:
    """Runs named tools against an in-memory dataset and always returns a ToolResult."""

    def __init__(self, image_synthesizer: Optional[ImageSynthesizer] = None):
        self.image_synthesizer = image_synthesizer or PlaceholderImageSynthesizer()

    def declarations_for(self, dataset: Dataset) -> List[Dict[str, Any]]:
        if isinstance(dataset, TabularDataset):
            return tabular.TABULAR_TOOL_DECLARATIONS
        return catalog_tools.CATALOG_TOOL_DECLARATIONS

    def execute(self, tool_name: str, args: Optional[Dict[str, Any]], dataset: Dataset):
        args = dict(args or {})
        try:
            result = self._dispatch(tool_name, args, dataset)
        except ToolResolutionError as exc:
            logger.info("Tool %s failed: %s %s", tool_name, exc.code, exc.message)
            return ErrorResult(code=exc.code, message=exc.message)
        logger.info("Tool %s -> %s", tool_name, result.kind)
        return result

    def _dispatch(self, tool_name: str, args: Dict[str, Any], dataset: Dataset):
        if isinstance(dataset, TabularDataset):
            table = tabular.TABULAR_TOOLS
            declarations = tabular.TABULAR_TOOL_DECLARATIONS
            image_tool = tabular.generate_image
            target: Any = dataset
            empty = dataset.row_count == 0
        else:
            table = catalog_tools.CATALOG_TOOLS
            declarations = catalog_tools.CATALOG_TOOL_DECLARATIONS
            image_tool = catalog_tools.generate_image
            if isinstance(dataset, ChannelDataset):
                target = dataset.records()
            else:
                target = list(dataset or [])
            empty = not target

        if tool_name != IMAGE_TOOL and tool_name not in table:
            raise ToolResolutionError("UnknownTool", f"Unknown tool: {tool_name}")
        missing = [p for p in _required_params(declarations, tool_name) if args.get(p) in (None, "")]
        if missing and tool_name != IMAGE_TOOL:
            raise ToolResolutionError("InvalidArguments", f"Missing required argument(s): {', '.join(missing)}")
        if tool_name == IMAGE_TOOL:
            return image_tool(target, args, self.image_synthesizer)
        if empty:
            raise ToolResolutionError("NoData", "No data loaded.")
        return table[tool_name](target, args)
