"""Discovery of templates and parameter sets on disk.

Each template is a directory under the base directory. Each parameter set
is a JSON or YAML file inside a template directory and describes one stack.
"""

import logging
from pathlib import Path
from typing import List, Tuple


logger = logging.getLogger(__name__)

PARAMETER_SUFFIXES = (".json", ".yaml", ".yml")


class TemplateNotFoundError(Exception):
    """Raised when a template or parameter set does not exist."""

    def __init__(self, message: str, valid_choices: List[str]) -> None:
        super().__init__(message)
        self.valid_choices = valid_choices


class TemplateFinder:
    """Lists templates and parameter sets below a base directory."""

    def __init__(self, base_dir: str = "cloudformation") -> None:
        self.base_dir = Path(base_dir)

    def list_templates(self) -> List[str]:
        """List template directory names in sorted order.

        Raises:
            TemplateNotFoundError: When the base directory does not exist
        """
        if not self.base_dir.is_dir():
            raise TemplateNotFoundError(
                f"Template directory not found: {self.base_dir}", []
            )
        return sorted(p.name for p in self.base_dir.iterdir() if p.is_dir())

    def list_parameters(self, template: str) -> List[str]:
        """List parameter set names (file names without suffix) of a template."""
        template_dir = self.base_dir / template
        logger.debug(f"Listing parameters for {template_dir}")
        if not template_dir.is_dir():
            raise TemplateNotFoundError(
                f"Invalid template: {template}", self.list_templates()
            )
        return sorted(
            p.stem for p in template_dir.iterdir()
            if p.is_file() and p.suffix in PARAMETER_SUFFIXES
        )

    def list_all(self) -> List[Tuple[str, str]]:
        """List every (template, parameter set) pair."""
        pairs = []
        for template in self.list_templates():
            for params in self.list_parameters(template):
                pairs.append((template, params))
        return pairs

    def validate(self, template: str, params: str) -> None:
        """Check that a template and one of its parameter sets exist.

        Raises:
            TemplateNotFoundError: Listing the valid templates or parameter sets
        """
        templates = self.list_templates()
        if template not in templates:
            raise TemplateNotFoundError(f"Invalid template: {template}", templates)
        valid_params = self.list_parameters(template)
        if params not in valid_params:
            raise TemplateNotFoundError(
                f"Invalid parameter file: {params} for template {template}", valid_params
            )

    def parameter_filename(self, template: str, params: str) -> Path:
        """Path of a parameter set file, preferring .json over YAML suffixes."""
        template_dir = self.base_dir / template
        for suffix in PARAMETER_SUFFIXES:
            candidate = template_dir / f"{params}{suffix}"
            if candidate.exists():
                return candidate
        return template_dir / f"{params}.json"
