"""Content-Length framing for JSON-RPC messages on a byte stream."""

from __future__ import annotations

import json

from qlrun.exceptions import ProcessError
from qlrun.json_types import JSONObject

_HEADER_SEPARATOR = b"\r\n\r\n"
_CONTENT_LENGTH = b"content-length:"


class FramingError(ProcessError):
    """`decoded` holds the whole messages that preceded the bad frame."""

    default_message = "Malformed message from query server"
    decoded: list[JSONObject] = []


def encode_message(message: JSONObject) -> bytes:
    payload = json.dumps(message).encode("utf-8")
    header = f"Content-Length: {len(payload)}\r\n\r\n".encode("utf-8")
    return header + payload


def _content_length(head: bytes) -> int:
    length = 0
    for line in head.split(b"\r\n"):
        if line.lower().startswith(_CONTENT_LENGTH):
            try:
                length = int(line.split(b":", 1)[1].strip())
            except ValueError:
                raise FramingError("Invalid Content-Length header") from None
            break
    if length <= 0:
        raise FramingError("Invalid Content-Length header")
    return length


class MessageDecoder:
    """Incremental decoder; bytes go in as they arrive, whole messages come out.

    A partial header or body stays buffered until the next `feed`.
    """

    def __init__(self) -> None:
        self._buffer = bytearray()
        self._expected: int | None = None

    def feed(self, data: bytes) -> list[JSONObject]:
        self._buffer.extend(data)
        messages: list[JSONObject] = []
        try:
            while True:
                if self._expected is None:
                    head, sep, _ = bytes(self._buffer).partition(_HEADER_SEPARATOR)
                    if not sep:
                        break
                    self._expected = _content_length(head)
                    del self._buffer[: len(head) + len(sep)]
                if len(self._buffer) < self._expected:
                    break
                body = bytes(self._buffer[: self._expected])
                del self._buffer[: self._expected]
                self._expected = None
                messages.append(_decode_body(body))
        except FramingError as exc:
            exc.decoded = messages
            raise
        return messages

    @property
    def pending_bytes(self) -> int:
        return len(self._buffer)


def _decode_body(body: bytes) -> JSONObject:
    try:
        message = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise FramingError(f"Invalid message body: {exc}") from exc
    if not isinstance(message, dict):
        raise FramingError("Invalid message payload")
    return message
