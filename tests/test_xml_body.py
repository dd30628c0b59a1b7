"""Tests for XML-to-dict and dict-to-XML conversion.

Tests cover:
- xml_to_dict: basic elements, namespaces, force_list, empty elements,
  attributes, mixed text
- dict_to_xml: attributes, lists as repeated siblings, None as empty
  elements, booleans, error cases
- model_to_xml: root naming and field aliases
"""

import xml.etree.ElementTree as ET

import pytest
from pydantic import BaseModel, ConfigDict, Field

from httpchain.xml_body import dict_to_xml, model_to_xml, xml_to_dict


# =============================================================================
# xml_to_dict tests
# =============================================================================


class TestXmlToDict:
    def test_simple_elements(self) -> None:
        xml = b"<Root><Name>hello</Name><Count>42</Count></Root>"
        assert xml_to_dict(xml) == {"Root": {"Name": "hello", "Count": "42"}}

    def test_empty_element_becomes_none(self) -> None:
        assert xml_to_dict(b"<Root><Prefix/><Blank>  </Blank></Root>") == {
            "Root": {"Prefix": None, "Blank": None}
        }

    def test_repeated_siblings_become_list(self) -> None:
        xml = b"<Root><A>1</A><B>2</B><A>3</A></Root>"
        assert xml_to_dict(xml) == {"Root": {"A": ["1", "3"], "B": "2"}}

    def test_force_list_for_single_child(self) -> None:
        xml = b"<Root><Item>only</Item></Root>"
        assert xml_to_dict(xml, force_list={"Item"}) == {"Root": {"Item": ["only"]}}

    def test_namespaces_stripped(self) -> None:
        xml = (
            b'<ListBucketResult xmlns="http://s3.amazonaws.com/doc/2006-03-01/">'
            b"<Name>bucket</Name></ListBucketResult>"
        )
        assert xml_to_dict(xml) == {"ListBucketResult": {"Name": "bucket"}}

    def test_attributes_prefixed(self) -> None:
        xml = b'<Widget id="7" xmlns:x="urn:x"><Name lang="en">sprocket</Name></Widget>'
        assert xml_to_dict(xml) == {
            "Widget": {"@id": "7", "Name": {"@lang": "en", "#text": "sprocket"}}
        }

    def test_attribute_only_element(self) -> None:
        assert xml_to_dict(b'<Root><Link href="/next"/></Root>') == {
            "Root": {"Link": {"@href": "/next"}}
        }

    def test_text_root(self) -> None:
        assert xml_to_dict(b"<Message>ok</Message>") == {"Message": "ok"}

    def test_malformed_raises_parse_error(self) -> None:
        with pytest.raises(ET.ParseError):
            xml_to_dict(b"<Root><Open></Root>")


# =============================================================================
# dict_to_xml tests
# =============================================================================


class TestDictToXml:
    def test_declaration_and_root(self) -> None:
        result = dict_to_xml({"Root": {"Name": "hello"}})
        assert result.startswith(b"<?xml")
        root = ET.fromstring(result)
        assert root.tag == "Root"
        assert root.find("Name").text == "hello"

    def test_attributes_and_text(self) -> None:
        root = ET.fromstring(dict_to_xml({"Name": {"@lang": "en", "#text": "sprocket"}}))
        assert root.get("lang") == "en"
        assert root.text == "sprocket"

    def test_list_becomes_repeated_siblings(self) -> None:
        root = ET.fromstring(dict_to_xml({"Root": {"Tag": ["a", "b"]}}))
        assert [el.text for el in root.findall("Tag")] == ["a", "b"]

    def test_none_becomes_empty_element(self) -> None:
        root = ET.fromstring(dict_to_xml({"Root": {"Prefix": None}}))
        prefix = root.find("Prefix")
        assert prefix is not None
        assert prefix.text is None

    def test_booleans_lowercase(self) -> None:
        root = ET.fromstring(dict_to_xml({"Root": {"Enabled": True, "Quiet": False}}))
        assert root.find("Enabled").text == "true"
        assert root.find("Quiet").text == "false"

    def test_decodes_back_to_same_dict(self) -> None:
        data = {"Widget": {"@id": "7", "Name": "sprocket", "Tag": ["a", "b"], "Note": None}}
        assert xml_to_dict(dict_to_xml(data)) == data

    @pytest.mark.parametrize("data", [{}, {"A": 1, "B": 2}, ["A"]])
    def test_requires_single_root(self, data) -> None:
        with pytest.raises(ValueError, match="exactly one root key"):
            dict_to_xml(data)


# =============================================================================
# model_to_xml tests
# =============================================================================


class Widget(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(alias="@id")
    Name: str
    Tags: list[str] = []


class TestModelToXml:
    def test_class_name_is_default_root(self) -> None:
        root = ET.fromstring(model_to_xml(Widget(id="7", Name="sprocket", Tags=["a"])))
        assert root.tag == "Widget"
        assert root.get("id") == "7"
        assert root.find("Name").text == "sprocket"
        assert [el.text for el in root.findall("Tags")] == ["a"]

    def test_explicit_root(self) -> None:
        root = ET.fromstring(model_to_xml(Widget(id="7", Name="sprocket"), root="Part"))
        assert root.tag == "Part"
