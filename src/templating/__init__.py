"""Template compilation for runner scale sets.

Base templates declare typed placeholders; the compiler binds them from a
per-instance data-value tree and applies one container-mode overlay.
"""

from templating.compiler import TemplateCompiler
from templating.overlay import hook_extension_name

__all__ = ['TemplateCompiler', 'hook_extension_name']
