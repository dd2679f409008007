"""
Passthrough Templates Package

Jinja2 templates for container config blocks and udev rules.
"""

from .loader import TemplateLoader, get_template_loader

__all__ = ["TemplateLoader", "get_template_loader"]
