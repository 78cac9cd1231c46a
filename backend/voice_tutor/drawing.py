import logging
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StringConstraints,
    TypeAdapter,
    ValidationError,
    ValidationInfo,
    WrapValidator,
    field_validator,
)

logger = logging.getLogger(__name__)


def _drop_if_invalid(value: Any, handler, info: ValidationInfo) -> Any:
    # A bad optional style field only loses the styling, not the shape.
    try:
        return handler(value)
    except ValidationError:
        logger.debug("[Drawing] dropping bad %s=%r", info.field_name, value)
        return None


Number = Annotated[float, Field(strict=True, allow_inf_nan=False)]
Color = Annotated[str, StringConstraints(strict=True, strip_whitespace=True, min_length=1)]
OptNumber = Annotated[Optional[Number], WrapValidator(_drop_if_invalid)]
OptColor = Annotated[Optional[Color], WrapValidator(_drop_if_invalid)]
OptStr = Annotated[Optional[Annotated[str, Field(strict=True)]], WrapValidator(_drop_if_invalid)]


# ── Wire-format models (must match frontend DrawingCommand type) ─────────────
# Field names are camelCase because the browser replays them on a 2D canvas
# context verbatim. Unknown fields are ignored.


class _Command(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class Circle(_Command):
    type: Literal["circle"] = "circle"
    x: Number
    y: Number
    radius: Number
    fill: OptColor = None
    stroke: OptColor = None
    strokeWidth: OptNumber = None
    opacity: OptNumber = None


class Rect(_Command):
    type: Literal["rect", "rectangle"] = "rect"
    x: Number
    y: Number
    width: Number
    height: Number
    fill: OptColor = None
    stroke: OptColor = None
    strokeWidth: OptNumber = None
    opacity: OptNumber = None

    @field_validator("type")
    @classmethod
    def _canonical_type(cls, value: str) -> str:
        return "rect"


class Line(_Command):
    type: Literal["line"] = "line"
    x1: Number
    y1: Number
    x2: Number
    y2: Number
    stroke: OptColor = None
    strokeWidth: OptNumber = None


class Arrow(_Command):
    type: Literal["arrow"] = "arrow"
    x1: Number
    y1: Number
    x2: Number
    y2: Number
    stroke: OptColor = None
    strokeWidth: OptNumber = None
    headSize: OptNumber = None


class Text(_Command):
    type: Literal["text"] = "text"
    x: Number
    y: Number
    content: Annotated[str, Field(strict=True)]
    fontSize: OptNumber = None
    fill: OptColor = None
    font: OptStr = None


class Path(_Command):
    type: Literal["path"] = "path"
    d: Annotated[str, Field(strict=True)]
    fill: OptColor = None
    stroke: OptColor = None
    strokeWidth: OptNumber = None


class Clear(_Command):
    type: Literal["clear"] = "clear"


DrawingCommand = Annotated[
    Union[Circle, Rect, Line, Arrow, Text, Path, Clear],
    Field(discriminator="type"),
]

_COMMAND_ADAPTER = TypeAdapter(DrawingCommand)


def parse_command(raw: Any) -> DrawingCommand:
    """
    Build one DrawingCommand from a decoded JSON object.

    Raises pydantic.ValidationError for an unrecognized tag, a missing
    required field, or a required field of the wrong kind.
    """
    return _COMMAND_ADAPTER.validate_python(raw)


def parse_commands(raw_commands: list) -> list[DrawingCommand]:
    """
    Validate a whole batch, keeping the listed order.
    Invalid entries are dropped one by one; the batch as a whole never fails.
    """
    commands: list[DrawingCommand] = []
    for index, raw in enumerate(raw_commands):
        try:
            commands.append(parse_command(raw))
        except ValidationError as exc:
            logger.warning(
                "[Drawing] rejected command #%d: %s",
                index,
                "; ".join(e["msg"] for e in exc.errors()),
            )
    return commands


def command_to_dict(command: DrawingCommand) -> dict:
    """Serialize for the browser, omitting unset optional fields."""
    return command.model_dump(exclude_none=True)
