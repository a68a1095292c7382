"""Newline-delimited JSON codec for the proxy wire format.

Transport-independent: works on bytes in, bytes out. Every decode either
returns a fully validated request model or raises ProtocolError.
"""

from __future__ import annotations

import base64
import binascii
import json
from typing import Any, TypeVar

import pydantic

from sandbox_proxy.core.models import (
    ClipboardRequest,
    ClipboardResponse,
    CommandRequest,
    CommandResponse,
    ProtocolError,
    ProxyResponse,
)

RequestT = TypeVar("RequestT", CommandRequest, ClipboardRequest)

FRAME_TERMINATOR = b"\n"


def _load_object(line: bytes) -> dict[str, Any]:
    try:
        text = line.decode("utf-8")
    except UnicodeDecodeError as e:
        raise ProtocolError(f"request is not valid UTF-8: {e}") from e

    try:
        obj = json.loads(text)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"invalid JSON: {e}") from e

    if not isinstance(obj, dict):
        raise ProtocolError("request must be a JSON object")
    return obj


def _validate(model: type[RequestT], obj: dict[str, Any]) -> RequestT:
    try:
        return model.model_validate(obj, strict=True)
    except pydantic.ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(x) for x in err['loc']) or 'request'}: {err['msg']}"
            for err in e.errors()
        )
        raise ProtocolError(f"invalid request: {problems}") from e


def decode_command_request(line: bytes) -> CommandRequest:
    """Decode {"args": [...]} exactly; NUL bytes are rejected up front."""
    request = _validate(CommandRequest, _load_object(line))
    if any("\x00" in arg for arg in request.args):
        raise ProtocolError("invalid request: args must not contain NUL bytes")
    return request


def decode_clipboard_request(line: bytes) -> ClipboardRequest:
    return _validate(ClipboardRequest, _load_object(line))


def encode_response(response: ProxyResponse) -> bytes:
    """One compact JSON object terminated by a newline."""
    return response.model_dump_json(exclude_none=True).encode("utf-8") + FRAME_TERMINATOR


def encode_request(payload: CommandRequest | ClipboardRequest) -> bytes:
    return payload.model_dump_json().encode("utf-8") + FRAME_TERMINATOR


def stdout_fields(data: bytes) -> dict[str, str]:
    """Response fields carrying stdout: text when UTF-8, otherwise base64."""
    try:
        return {"stdout": data.decode("utf-8")}
    except UnicodeDecodeError:
        return {"stdout": "", "stdout_b64": base64.b64encode(data).decode("ascii")}


def decode_response(data: bytes) -> dict[str, Any]:
    """Parse a response frame on the client side.

    Raises:
        ProtocolError: If the frame is not a JSON object with an integer exit_code
    """
    try:
        obj = json.loads(data.decode("utf-8").strip())
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ProtocolError(f"failed to parse response: {e}") from e

    if not isinstance(obj, dict):
        raise ProtocolError("failed to parse response: expected a JSON object")
    exit_code = obj.get("exit_code")
    if not isinstance(exit_code, int) or isinstance(exit_code, bool):
        raise ProtocolError("failed to parse response: missing or invalid exit_code")
    for key in ("stdout", "stderr", "stdout_b64"):
        if key in obj and not isinstance(obj[key], str):
            raise ProtocolError(f"failed to parse response: {key} must be a string")
    return obj


def response_stdout(obj: dict[str, Any]) -> bytes:
    """Stdout bytes from a decoded response, base64-decoding when needed."""
    encoded = obj.get("stdout_b64")
    if encoded:
        try:
            return base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ProtocolError(f"failed to parse response: invalid stdout_b64: {e}") from e
    return obj.get("stdout", "").encode("utf-8")


def command_response(exit_code: int, stdout: bytes = b"", stderr: str = "") -> CommandResponse:
    return CommandResponse(exit_code=exit_code, stderr=stderr, **stdout_fields(stdout))


def clipboard_response(exit_code: int, image: bytes = b"", stderr: str = "") -> ClipboardResponse:
    return ClipboardResponse(
        exit_code=exit_code,
        stdout_b64=base64.b64encode(image).decode("ascii"),
        stderr=stderr,
    )
