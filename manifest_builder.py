"""package.xml generation for metadata retrieval."""

from collections.abc import Iterable, Mapping, Sequence
from pathlib import Path
import xml.etree.ElementTree as ET

SF_NAMESPACE_URI = 'http://soap.sforce.com/2006/04/metadata'
WILDCARD_MEMBER = '*'
XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>\n'

# Types whose enumerated members are followed by a wildcard member.
INSTANCE_WILDCARD_TYPES = frozenset({'CustomObject'})


def build_manifest(
    candidates: Sequence[str],
    exclusions: Iterable[str],
    overrides: Mapping[str, Sequence[str]],
    api_version: str,
    instance_wildcard_types: Iterable[str] = INSTANCE_WILDCARD_TYPES,
) -> str:
    """Serialize a package.xml listing every candidate type not excluded.

    Types with a non-empty override list enumerate those members in order;
    all other types request the wildcard member.
    """
    excluded = set(exclusions)
    wildcard_types = set(instance_wildcard_types)
    emitted: set[str] = set()

    package = ET.Element('Package', xmlns=SF_NAMESPACE_URI)
    for type_name in candidates:
        if type_name in excluded or type_name in emitted:
            continue
        emitted.add(type_name)

        members = list(overrides.get(type_name) or ())
        if not members:
            members = [WILDCARD_MEMBER]
        elif type_name in wildcard_types:
            members.append(WILDCARD_MEMBER)

        types_elem = ET.SubElement(package, 'types')
        for member in members:
            ET.SubElement(types_elem, 'members').text = member
        ET.SubElement(types_elem, 'name').text = type_name
    ET.SubElement(package, 'version').text = api_version

    if hasattr(ET, 'indent'):
        ET.indent(package, space="    ")
    return XML_DECLARATION + ET.tostring(package, encoding='unicode') + '\n'


def write_manifest(manifest_path: Path, manifest_text: str) -> None:
    """Write a manifest document, creating its directory when needed."""
    manifest_path.parent.mkdir(parents=True, exist_ok=True)
    manifest_path.write_text(manifest_text, encoding='utf-8')
