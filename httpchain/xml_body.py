"""XML <-> dict conversion for request and response bodies.

Response bodies decode into plain dicts (root tag as the single key) so they
can be validated into Pydantic models the same way JSON bodies are. Request
payloads go the other way: a single-root dict, or a Pydantic model, becomes
UTF-8 XML bytes with a declaration.

Mapping rules (both directions):
- ``@name`` keys <-> XML attributes (xmlns declarations are dropped on decode)
- ``#text`` key <-> text of an element that also has attributes or children
- repeated child tags <-> lists
- empty element <-> None
"""

from __future__ import annotations

import xml.etree.ElementTree as ET
from typing import Any

from pydantic import BaseModel


def xml_to_dict(
    xml_bytes: bytes,
    force_list: set[str] | None = None,
) -> dict[str, Any]:
    """Parse XML bytes into a dict keyed by the (namespace-stripped) root tag.

    Args:
        xml_bytes: Raw XML document.
        force_list: Tag names that always decode as lists, even with a single
            occurrence. Without it a lone child decodes as a scalar.

    Raises:
        ET.ParseError: If *xml_bytes* is not well-formed XML.
    """
    root = ET.fromstring(xml_bytes)
    return {_local_name(root.tag): _decode_element(root, force_list or set())}


def _local_name(tag: str) -> str:
    """``{urn:x}Name`` -> ``Name``."""
    if tag.startswith("{"):
        return tag.split("}", 1)[1]
    return tag


def _decode_element(element: ET.Element, force_list: set[str]) -> dict[str, Any] | str | None:
    decoded: dict[str, Any] = {}

    for name, value in element.attrib.items():
        if name.startswith("xmlns") or name.startswith("{"):
            continue
        decoded[f"@{name}"] = value

    grouped: dict[str, list[Any]] = {}
    for child in element:
        grouped.setdefault(_local_name(child.tag), []).append(_decode_element(child, force_list))

    for tag, items in grouped.items():
        decoded[tag] = items if tag in force_list or len(items) > 1 else items[0]

    text = (element.text or "").strip()
    if text:
        if not decoded:
            return text
        decoded["#text"] = text

    return decoded or None


def dict_to_xml(data: dict[str, Any]) -> bytes:
    """Serialize a single-root dict into XML bytes.

    Raises:
        ValueError: If *data* is not a dict with exactly one key.
    """
    if not isinstance(data, dict) or len(data) != 1:
        count = len(data) if isinstance(data, dict) else "N/A"
        raise ValueError(
            f"dict_to_xml expects a dict with exactly one root key, "
            f"got {type(data).__name__} with {count} keys"
        )

    (root_tag, root_value), = data.items()
    root = _encode_element(root_tag, root_value)
    ET.indent(root)
    return ET.tostring(root, encoding="utf-8", xml_declaration=True)


def model_to_xml(model: BaseModel, root: str | None = None) -> bytes:
    """Serialize a Pydantic model, using *root* (default: class name) as the root tag.

    Field aliases are honored so ``Field(alias="@id")`` becomes an attribute.
    """
    payload = model.model_dump(mode="json", by_alias=True, exclude_none=False)
    return dict_to_xml({root or type(model).__name__: payload})


def _encode_element(tag: str, value: Any) -> ET.Element:
    element = ET.Element(tag)

    if value is None:
        return element

    if isinstance(value, dict):
        for key, child in value.items():
            if key == "#text":
                element.text = _scalar_text(child)
            elif key.startswith("@"):
                element.set(key[1:], _scalar_text(child))
            elif isinstance(child, list):
                for item in child:
                    element.append(_encode_element(key, item))
            else:
                element.append(_encode_element(key, child))
    elif isinstance(value, list):
        for item in value:
            element.append(_encode_element("item", item))
    else:
        element.text = _scalar_text(value)

    return element


def _scalar_text(value: Any) -> str:
    # XML Schema booleans are lowercase
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)
