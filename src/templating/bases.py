"""Base templates and placeholder binding.

Base templates are YAML documents shipped in the bases/ directory. Values
that depend on the instance are declared with two custom tags:

    name: !slot installation.name          typed value from the data tree
    name: !text "{installation.name}-x"    string composed from data paths

A slot is replaced by the value at its dotted path, keeping its type
(ints stay ints, mappings stay mappings). A text placeholder formats each
{path} reference with the value's string form. Nothing else in a template
is ever rewritten.
"""

import copy
import functools
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from errors import CompileError, ErrorKind

logger = logging.getLogger(__name__)

BASES_DIR = Path(__file__).parent / 'bases'

_TEXT_REF = re.compile(r'\{([A-Za-z_][A-Za-z0-9_.]*)\}')


@dataclass(frozen=True)
class Slot:
    """Typed value binding to a data-value path."""
    path: str
    line: int = 0


@dataclass(frozen=True)
class Text:
    """String composed from one or more data-value paths."""
    template: str
    line: int = 0

    @property
    def paths(self) -> list[str]:
        return _TEXT_REF.findall(self.template)


class TemplateLoader(yaml.SafeLoader):
    """SafeLoader that understands !slot and !text."""


def _construct_slot(loader: TemplateLoader, node: yaml.Node) -> Slot:
    return Slot(path=loader.construct_scalar(node), line=node.start_mark.line + 1)


def _construct_text(loader: TemplateLoader, node: yaml.Node) -> Text:
    return Text(template=loader.construct_scalar(node), line=node.start_mark.line + 1)


TemplateLoader.add_constructor('!slot', _construct_slot)
TemplateLoader.add_constructor('!text', _construct_text)


@dataclass(frozen=True)
class BaseTemplate:
    """Parsed base template. Documents still contain placeholders."""
    name: str
    documents: tuple


def _context_lines(text: str, line: int, radius: int = 2) -> str:
    """Numbered source lines around a 1-based line number."""
    lines = text.splitlines()
    start = max(0, line - 1 - radius)
    end = min(len(lines), line + radius)
    return '\n'.join(f'{n + 1:4d}: {lines[n]}' for n in range(start, end))


def parse_template(text: str, template_name: str) -> BaseTemplate:
    """Parse template source, mapping YAML errors to SYNTAX compile errors."""
    try:
        documents = [doc for doc in yaml.load_all(text, Loader=TemplateLoader) if doc is not None]
    except yaml.MarkedYAMLError as e:
        mark = e.problem_mark or e.context_mark
        line = mark.line + 1 if mark else 0
        column = mark.column + 1 if mark else 0
        raise CompileError(
            ErrorKind.SYNTAX,
            e.problem or str(e),
            template_name=template_name,
            line=line,
            column=column,
            context=_context_lines(text, line) if line else '',
        ) from e
    except yaml.YAMLError as e:
        raise CompileError(ErrorKind.SYNTAX, str(e), template_name=template_name) from e

    for i, doc in enumerate(documents):
        if not isinstance(doc, dict):
            raise CompileError(
                ErrorKind.SYNTAX,
                f"document {i} must be a mapping, got {type(doc).__name__}",
                template_name=template_name,
            )
    return BaseTemplate(name=template_name, documents=tuple(documents))


@functools.lru_cache(maxsize=None)
def _load_cached(filename: str) -> BaseTemplate:
    path = BASES_DIR / filename
    try:
        text = path.read_text(encoding='utf-8')
    except OSError as e:
        raise CompileError(
            ErrorKind.SYNTAX,
            f"cannot read base template: {e.strerror}",
            template_name=filename,
        ) from e
    logger.debug(f"Loaded base template {filename}")
    return parse_template(text, filename)


def load_template(filename: str) -> BaseTemplate:
    """Load a packaged base template. Callers receive an independent copy."""
    cached = _load_cached(filename)
    return BaseTemplate(name=cached.name, documents=copy.deepcopy(cached.documents))


# ---------------------------------------------------------------------------
# Binding
# ---------------------------------------------------------------------------

def lookup(values: dict, path: str, template_name: str = '', line: int = 0) -> Any:
    """Resolve a dotted path in the data-value tree."""
    node: Any = values
    for part in path.split('.'):
        if not isinstance(node, dict) or part not in node:
            raise CompileError(
                ErrorKind.DATA,
                f"data value '{path}' is not defined",
                template_name=template_name,
                line=line,
            )
        node = node[part]
    return node


def _render_text(text: Text, values: dict, template_name: str) -> str:
    def replace(match: re.Match) -> str:
        value = lookup(values, match.group(1), template_name, text.line)
        if isinstance(value, (dict, list)):
            raise CompileError(
                ErrorKind.DATA,
                f"data value '{match.group(1)}' is a {type(value).__name__}, "
                f"cannot be used inside text",
                template_name=template_name,
                line=text.line,
            )
        if value is None:
            return ''
        if isinstance(value, bool):
            return 'true' if value else 'false'
        return str(value)

    return _TEXT_REF.sub(replace, text.template)


def bind(node: Any, values: dict, template_name: str = '') -> Any:
    """Return a copy of node with every placeholder bound from values."""
    if isinstance(node, Slot):
        return copy.deepcopy(lookup(values, node.path, template_name, node.line))
    if isinstance(node, Text):
        return _render_text(node, values, template_name)
    if isinstance(node, dict):
        return {key: bind(value, values, template_name) for key, value in node.items()}
    if isinstance(node, list):
        return [bind(item, values, template_name) for item in node]
    return node


def find_unresolved(node: Any, location: str = '') -> list[str]:
    """Locations of placeholders still present in node."""
    if isinstance(node, Slot):
        return [f"{location or '<root>'} (!slot {node.path})"]
    if isinstance(node, Text):
        return [f"{location or '<root>'} (!text {node.template})"]
    found = []
    if isinstance(node, dict):
        for key, value in node.items():
            found.extend(find_unresolved(value, f'{location}.{key}' if location else str(key)))
    elif isinstance(node, list):
        for i, item in enumerate(node):
            found.extend(find_unresolved(item, f'{location}[{i}]'))
    return found
