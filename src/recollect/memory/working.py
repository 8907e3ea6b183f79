"""Working memory configuration, validation and prompt instructions.

Working memory is a single text blob attached to a conversation or a user.
It is either free-form markdown (optionally seeded from a template) or JSON
validated against a pydantic model.
"""

import json
from dataclasses import dataclass
from typing import Any, Optional, Union

from pydantic import BaseModel, ValidationError

from recollect.errors import ErrorKind, RecollectError
from recollect.memory.types import WorkingMemoryScope

WorkingMemoryContent = Union[str, dict[str, Any]]


@dataclass
class WorkingMemoryConfig:
    """Working memory options for Memory.

    Attributes:
        enabled: Whether working memory operations are allowed
        scope: Attach to each conversation or to the user across conversations
        template: Markdown template describing the expected layout
        schema: Pydantic model the content must validate against
    """
    enabled: bool = False
    scope: WorkingMemoryScope = WorkingMemoryScope.CONVERSATION
    template: Optional[str] = None
    schema: Optional[type[BaseModel]] = None

    def __post_init__(self) -> None:
        if isinstance(self.scope, str):
            self.scope = WorkingMemoryScope(self.scope)

    @property
    def format(self) -> Optional[str]:
        if self.schema is not None:
            return "json"
        if self.template is not None:
            return "markdown"
        return None


def _invalid(message: str, error: Optional[Exception] = None) -> RecollectError:
    details: dict[str, Any] = {}
    if isinstance(error, ValidationError):
        details["errors"] = error.errors(include_url=False)
    return RecollectError(
        ErrorKind.INVALID_WORKING_MEMORY_FORMAT,
        f"Invalid working memory format: {message}",
        details,
    )


def serialize_working_memory(
    content: WorkingMemoryContent, schema: Optional[type[BaseModel]] = None
) -> str:
    """Validate working memory content and turn it into the stored string.

    Args:
        content: Text, or a mapping of structured fields
        schema: Optional pydantic model the content must satisfy

    Returns:
        The string to persist. Without a schema, text is stored as-is and
        mappings as JSON. With a schema, the validated model as JSON.

    Raises:
        RecollectError: INVALID_WORKING_MEMORY_FORMAT if validation fails
    """
    if schema is None:
        if isinstance(content, str):
            return content
        try:
            return json.dumps(content)
        except (TypeError, ValueError) as e:
            raise _invalid(str(e), e) from e

    try:
        if isinstance(content, str):
            model = schema.model_validate_json(content)
        else:
            model = schema.model_validate(content)
    except ValidationError as e:
        raise _invalid(f"{e.error_count()} validation error(s) for {schema.__name__}", e) from e

    return json.dumps(model.model_dump(mode="json"))


def build_instructions(config: WorkingMemoryConfig, current: Optional[str]) -> str:
    """System-prompt text explaining the working memory to the model."""
    lines = [
        "## Working Memory",
        "",
        "You have access to a persistent working memory that stores important "
        f"context about the {config.scope.value}.",
    ]

    if config.schema is not None:
        schema_json = json.dumps(config.schema.model_json_schema(), indent=2)
        lines += [
            "",
            "Working memory is stored as JSON matching this schema:",
            "```json",
            schema_json,
            "```",
        ]
    elif config.template is not None:
        lines += [
            "",
            "Working memory follows this markdown template:",
            "```markdown",
            config.template,
            "```",
        ]

    lines += ["", "Current working memory:"]
    if current:
        lines.append(current)
    else:
        lines.append("(empty)")

    lines += [
        "",
        "Update the working memory when you learn new durable information "
        "about the user or the task. Keep it concise and replace outdated facts.",
    ]
    return "\n".join(lines)
