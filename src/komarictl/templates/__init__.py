"""Jinja2 template rendering for generated host files."""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from pathlib import Path

from jinja2 import ChoiceLoader, Environment, FileSystemLoader, PackageLoader, StrictUndefined


class TemplateEngine:
    """Render built-in templates, preferring operator overrides when present."""

    def __init__(self, environment: Environment) -> None:
        """Wrap a configured Jinja2 environment."""
        self._environment = environment

    @classmethod
    def with_overrides(cls, overrides_dir: Path | None) -> TemplateEngine:
        """Return an engine that checks *overrides_dir* before built-ins."""
        loaders: list[FileSystemLoader | PackageLoader] = []
        if overrides_dir is not None and overrides_dir.is_dir():
            loaders.append(FileSystemLoader(str(overrides_dir)))
        loaders.append(PackageLoader("komarictl", "templates"))
        environment = Environment(  # noqa: S701 - renders config files, not HTML
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            autoescape=False,
        )
        return cls(environment)

    def render_to_string(self, template_name: str, context: Mapping[str, object]) -> str:
        """Render *template_name* with *context*."""
        template = self._environment.get_template(template_name)
        return template.render(**context)

    def render_to_path(
        self,
        template_name: str,
        destination: Path,
        context: Mapping[str, object],
        *,
        mode: int = 0o644,
    ) -> bool:
        """Render into *destination* atomically; return ``True`` when content changed."""
        content = self.render_to_string(template_name, context)
        if destination.exists():
            try:
                if destination.read_text(encoding="utf-8") == content:
                    return False
            except OSError:
                pass
        destination.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(destination.parent), prefix=f".{destination.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
            os.chmod(tmp_path, mode)
            os.replace(tmp_path, destination)
        finally:
            tmp_path.unlink(missing_ok=True)
        return True


__all__ = ["TemplateEngine"]
