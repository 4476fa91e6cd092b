# Copyright TELICENT LTD
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""JSON codec utilities.

This module converts between the structured values the library works with and the
bytes that travel over HTTP. Documents, change-feed rows and server replies are all
JSON, so this is the single place where encoding and decoding errors are mapped onto
the library's exception types.
"""

import json
from typing import Any, Dict, List, Union

from .exceptions import DecodeError

# Type alias for JSON-compatible types
JsonType = Union[Dict[str, Any], List[Any], str, int, float, bool, None]


def encode_json(obj: JsonType) -> bytes:
    """
    Encode a structured value as a compact UTF-8 JSON body.

    Args:
        obj: A JSON-serialisable object (dict, list, str, int, float, bool, None)

    Returns:
        bytes: The encoded body

    Raises:
        TypeError: If the object cannot be serialised to JSON

    Examples:
        >>> encode_json({"_id": "a", "x": 1})
        b'{"_id":"a","x":1}'
    """
    # separators=(',', ':') removes whitespace
    # ensure_ascii=False keeps Unicode characters as UTF-8
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def decode_json(data: Union[bytes, str, None]) -> JsonType:
    """
    Decode a JSON body into a structured value.

    An empty body decodes to None, since several CouchDB replies (HEAD, some
    DELETEs behind proxies) legitimately carry no content.

    Args:
        data: The raw body

    Returns:
        JsonType: The decoded value

    Raises:
        DecodeError: If the body is not valid UTF-8 JSON
    """
    if data is None:
        return None
    if isinstance(data, (bytes, bytearray)):
        if not data.strip():
            return None
        try:
            data = bytes(data).decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecodeError(f"Response body is not UTF-8: {e}") from e
    elif not data.strip():
        return None

    try:
        return json.loads(data)
    except ValueError as e:
        raise DecodeError(f"Failed to decode JSON: {e}") from e


def expect_object(value: JsonType, what: str = "response") -> Dict[str, Any]:
    """Return `value` if it is a JSON object, else raise DecodeError."""
    if not isinstance(value, dict):
        raise DecodeError(f"Expected a JSON object in {what}, got {type(value).__name__}")
    return value
