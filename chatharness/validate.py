"""Provider-agnostic preflight checks on chat requests."""

from __future__ import annotations

from chatharness.catalog import parse_model_ref
from chatharness.messages import BlockKind, ContentBlock, Request, ToolChoiceMode


class ValidationError(ValueError):
    """A request failed preflight; ``issues`` lists every problem found."""

    def __init__(self, issues: list[str]) -> None:
        self.issues = list(issues)
        super().__init__(str(self))

    def __str__(self) -> str:
        return "invalid request: " + "; ".join(self.issues)


def _block_issue(block: ContentBlock) -> str | None:
    kind = block.kind
    if kind == BlockKind.TEXT or kind == BlockKind.THINKING:
        return None
    if kind == BlockKind.IMAGE:
        image = block.image
        if image is None:
            return "image block missing image"
        if not image.url and not image.base64:
            return "image block has neither url nor base64"
        if image.url and image.base64:
            return "image block has both url and base64"
        if not image.media_type:
            return "image block missing media_type"
        return None
    if kind == BlockKind.TOOL_USE:
        if block.tool_use is None:
            return "tool_use block missing tool_use"
        if not block.tool_use.name:
            return "tool_use missing name"
        return None
    if kind == BlockKind.TOOL_RESULT:
        if block.tool_result is None:
            return "tool_result block missing tool_result"
        if not block.tool_result.tool_use_id:
            return "tool_result missing tool_use_id"
        return None
    if not kind:
        return "block has empty kind"
    return f'unknown block kind "{kind}"'


def validate(req: Request) -> None:
    """Raise ValidationError if ``req`` has shape errors."""
    issues: list[str] = []

    if not req.messages and not req.system:
        issues.append("request has no messages and no system prompt")

    if req.model:
        try:
            parse_model_ref(req.model)
        except ValueError as err:
            # Bare aliases are allowed; only malformed refs are rejected.
            if ":" in req.model:
                issues.append(str(err))

    if req.tool_choice is not None:
        mode = req.tool_choice.mode
        if mode == ToolChoiceMode.TOOL:
            if not req.tool_choice.tool_name:
                issues.append("tool_choice mode=tool requires tool_name")
        elif mode not in (ToolChoiceMode.AUTO, ToolChoiceMode.ANY, ToolChoiceMode.NONE):
            issues.append(f'unknown tool_choice mode "{mode}"')

    for i, message in enumerate(req.messages):
        for j, block in enumerate(message.content):
            if (issue := _block_issue(block)) is not None:
                issues.append(f"message[{i}].content[{j}]: {issue}")

    seen_uses: set[str] = set()
    for message in req.messages:
        for block in message.content:
            if block.kind == BlockKind.TOOL_USE and block.tool_use is not None:
                seen_uses.add(block.tool_use.id)
            if block.kind == BlockKind.TOOL_RESULT and block.tool_result is not None:
                use_id = block.tool_result.tool_use_id
                if use_id not in seen_uses:
                    issues.append(f'tool_result references unknown tool_use id "{use_id}"')

    if issues:
        raise ValidationError(issues)