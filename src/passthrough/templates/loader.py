"""
Template loading for container config blocks and udev rules.

Operators can override a packaged template by dropping a file with the
same name into one of the override directories; the first match wins.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, List

from jinja2 import (
    ChoiceLoader, Environment, FileSystemLoader, StrictUndefined, TemplateNotFound,
    UndefinedError,
)

from common.exceptions import ConfigError

logger = logging.getLogger(__name__)

PACKAGE_TEMPLATES = Path(__file__).parent

OVERRIDE_PATHS = [
    Path("/etc/gpu-passthrough/templates"),
    Path.home() / ".config/gpu-passthrough/templates",
]


class TemplateLoader:
    """
    Jinja2 environment over override directories, then the packaged templates.

    Rendering uses StrictUndefined: a variable the caller forgot to pass
    raises instead of silently producing an empty directive.
    """

    def __init__(self, override_paths: Optional[List[Path]] = None):
        if override_paths is None:
            override_paths = OVERRIDE_PATHS
        self.search_path = [p for p in override_paths if p.is_dir()] + [PACKAGE_TEMPLATES]
        for path in self.search_path[:-1]:
            logger.debug(f"Template overrides enabled from {path}")

        self._env = Environment(
            loader=ChoiceLoader([FileSystemLoader(str(p)) for p in self.search_path]),
            autoescape=False,
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )

    def render(self, name: str, **variables) -> str:
        """
        Render template ``name``.

        Raises:
            ConfigError: Template missing or referencing an unset variable
        """
        try:
            template = self._env.get_template(name)
        except TemplateNotFound:
            raise ConfigError(
                f"Template not found: {name}",
                code="TEMPLATE_NOT_FOUND",
                details={"searched": [str(p) for p in self.search_path]},
            )
        try:
            return template.render(**variables)
        except UndefinedError as e:
            raise ConfigError(f"Template {name}: {e}", code="TEMPLATE_ERROR", cause=e)

    def list_templates(self) -> List[str]:
        return sorted(n for n in self._env.list_templates() if n.endswith(".j2"))


_loader: Optional[TemplateLoader] = None


def get_template_loader() -> TemplateLoader:
    """Shared loader using the default override directories."""
    global _loader
    if _loader is None:
        _loader = TemplateLoader()
    return _loader
