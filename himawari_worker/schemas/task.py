"""Pydantic schema for the coordinator's task descriptor.

The coordinator answers GET /task with a JSON object using capitalised field
names (Id, Size, Name, PresetData, Command, Args). This module validates that
payload into an immutable Task and can serialise a Task back into the same
shape.

Decoding rules (decode_task, task_from_payload):
    - Keys match the wire names case-insensitively ("args", "PRESETDATA");
      Python attribute names such as "preset_payload" are not wire names
    - Unknown fields are ignored
    - Missing or null fields take their zero value (0, "", empty Args)
    - Wrongly typed fields, a non-object body, or an unusable Id raise
      ProtocolViolation

All schemas use Pydantic v2 syntax with model_config instead of class Config.
"""

from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    model_validator,
)

from himawari_worker.exceptions import ProtocolViolation

# The only command the execution engine accepts.
FFMPEG_COMMAND = "ffmpeg"

# Validation context flag: the data is an acquire response, not Python kwargs.
WIRE_CONTEXT = "wire"


class Task(BaseModel):
    """One unit of work handed out by the coordinator.

    Frozen: a Task is never modified after it is acquired.

    Wire format:
        {"Id": "abc", "Size": 1024, "Name": "ep01", "PresetData": "x=1",
         "Command": "ffmpeg", "Args": ["-i", "in.mp4"]}
    """

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    id: str = Field(default="", alias="Id", description="Opaque task id, names the artifact")
    size_hint: int = Field(default=0, alias="Size", description="Expected size in bytes")
    display_name: str = Field(default="", alias="Name", description="Label for logs only")
    preset_payload: str = Field(
        default="", alias="PresetData", description="Written to the -fpre side-input file"
    )
    command: str = Field(default="", alias="Command", description="Tool to invoke")
    arguments: tuple[str, ...] = Field(
        default=(), alias="Args", description="Passed verbatim before engine arguments"
    )

    @model_validator(mode="before")
    @classmethod
    def _normalise_keys(cls, data: Any, info: ValidationInfo) -> Any:
        if not isinstance(data, dict):
            return data
        if info.context and info.context.get(WIRE_CONTEXT):
            # coordinator keys match case-insensitively; later keys win
            normalised = {}
            for key, value in data.items():
                alias = _WIRE_ALIASES.get(key.lower()) if isinstance(key, str) else None
                if alias is not None and value is not None:
                    normalised[alias] = value
            return normalised
        # null decodes to the zero value, same as an absent field
        return {key: value for key, value in data.items() if value is not None}

    def to_payload(self) -> dict[str, Any]:
        """Serialise back into the acquire-response shape."""
        return self.model_dump(mode="json", by_alias=True)

    def log_fields(self) -> dict[str, Any]:
        """Fields bound to every log event of this task's pipeline."""
        return {
            "task_id": self.id,
            "task_name": self.display_name,
            "size_hint": self.size_hint,
        }


_WIRE_ALIASES = {field.alias.lower(): field.alias for field in Task.model_fields.values()}


# Path separators, NUL, and line breaks that would corrupt multipart headers.
_UNSAFE_ID_CHARS = ("/", "\\", "\x00", "\r", "\n")


def _check_task_id(task_id: str) -> None:
    if not task_id:
        raise ProtocolViolation("task id is empty")
    if task_id in (".", "..") or any(ch in task_id for ch in _UNSAFE_ID_CHARS):
        raise ProtocolViolation(f"task id is not usable as a file name: {task_id!r}")


def decode_task(raw: bytes | str) -> Task:
    """Decode an acquire-task response body into a Task.

    Args:
        raw: Response body (JSON object)

    Returns:
        Validated, immutable Task

    Raises:
        ProtocolViolation: If the body is not a valid task or the id is empty/unsafe
    """
    try:
        task = Task.model_validate_json(raw, context={WIRE_CONTEXT: True})
    except ValidationError as e:
        raise ProtocolViolation(f"undecodable task: {e.error_count()} error(s): {e}") from e
    _check_task_id(task.id)
    return task


def task_from_payload(payload: dict[str, Any]) -> Task:
    """Validate an already-parsed acquire payload (same rules as decode_task)."""
    try:
        task = Task.model_validate(payload, context={WIRE_CONTEXT: True})
    except ValidationError as e:
        raise ProtocolViolation(f"undecodable task: {e.error_count()} error(s): {e}") from e
    _check_task_id(task.id)
    return task
