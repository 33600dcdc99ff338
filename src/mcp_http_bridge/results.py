import json
from typing import Any

from mcp.types import CallToolResult, TextContent


def unwrap_tool_result(result: CallToolResult) -> Any:
    """Pick one representation of a tool result.

    Structured content wins, then JSON decoded from the text content, then the
    raw result as a plain dict.
    """
    if result.structuredContent is not None:
        return result.structuredContent

    texts = [block.text for block in result.content if isinstance(block, TextContent)]
    if texts:
        try:
            return json.loads(texts[0] if len(texts) == 1 else "".join(texts))
        except json.JSONDecodeError:
            pass

    return result.model_dump(by_alias=True, exclude_none=True)
