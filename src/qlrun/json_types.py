from __future__ import annotations

"""JSON value types crossing the query-server wire.

Messages are decoded into these shapes before any typed payload model sees
them, so the transport layer never deals in `Any`.
"""

from typing import TypeAlias


JSONScalar: TypeAlias = str | int | float | bool | None
JSONValue: TypeAlias = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]
JSONObject: TypeAlias = dict[str, JSONValue]
RequestId: TypeAlias = int | str
