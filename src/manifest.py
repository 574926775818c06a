"""Compiled manifests.

A Manifest is the ordered, fully-resolved set of resource documents for one
runner instance (or for the controller). Beyond (kind, name) pairs it is
opaque to the reconciler; its YAML rendering is stable so that compiling the
same input twice produces byte-identical output.
"""

from dataclasses import dataclass, field
from typing import Iterator, Optional

import yaml


class _ManifestDumper(yaml.SafeDumper):
    """SafeDumper that never emits anchors and keeps block scalars readable."""

    def ignore_aliases(self, data):
        return True


def _represent_str(dumper: yaml.SafeDumper, data: str):
    if '\n' in data:
        return dumper.represent_scalar('tag:yaml.org,2002:str', data, style='|')
    return dumper.represent_scalar('tag:yaml.org,2002:str', data)


_ManifestDumper.add_representer(str, _represent_str)


def dump_documents(documents: list[dict]) -> str:
    """Render documents as a multi-document YAML stream, keys in insertion order."""
    return yaml.dump_all(
        documents,
        Dumper=_ManifestDumper,
        sort_keys=False,
        default_flow_style=False,
        explicit_start=True,
        allow_unicode=True,
        width=4096,
    )


@dataclass
class Manifest:
    """Ordered resource documents for one application."""
    documents: list[dict] = field(default_factory=list)
    source: str = ''

    def __len__(self) -> int:
        return len(self.documents)

    def __iter__(self) -> Iterator[dict]:
        return iter(self.documents)

    def resources(self) -> list[tuple[str, str]]:
        """(kind, name) for every document, in order."""
        return [
            (doc.get('kind', ''), doc.get('metadata', {}).get('name', ''))
            for doc in self.documents
        ]

    def find(self, kind: str, name: Optional[str] = None) -> Optional[dict]:
        """First document of the given kind (and name, when given)."""
        for doc in self.documents:
            if doc.get('kind') != kind:
                continue
            if name is None or doc.get('metadata', {}).get('name') == name:
                return doc
        return None

    def to_yaml(self) -> str:
        return dump_documents(self.documents)

    def to_bytes(self) -> bytes:
        return self.to_yaml().encode('utf-8')

    @classmethod
    def from_yaml(cls, text: str, source: str = '') -> 'Manifest':
        """Parse a multi-document YAML stream, skipping empty documents."""
        documents = [doc for doc in yaml.safe_load_all(text) if doc]
        for doc in documents:
            if not isinstance(doc, dict):
                raise ValueError(f"manifest document must be a mapping, got {type(doc).__name__}")
        return cls(documents=documents, source=source)


def dump_yaml(data) -> str:
    """Render a single value as block YAML, keys in insertion order."""
    return yaml.dump(
        data,
        Dumper=_ManifestDumper,
        sort_keys=False,
        default_flow_style=False,
        allow_unicode=True,
        width=4096,
    )
