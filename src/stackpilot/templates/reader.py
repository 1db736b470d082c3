"""Rendering of parameter files into changeset requests.

A parameter file is text with ``${env:NAME}`` placeholders filled from the
environment. The rendered text is parsed as YAML, which also accepts JSON.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from ..deployment.models import ChangesetRequest, ChangesetType


logger = logging.getLogger(__name__)

# The env: prefix keeps Fn::Sub references such as ${AWS::Region} untouched
PLACEHOLDER = re.compile(r"\$\{env:([A-Za-z_][A-Za-z0-9_]*)\}")


class ParameterFileError(Exception):
    """Raised when a parameter file cannot be rendered or parsed."""
    pass


def render_parameter_text(text: str, environ: Optional[Mapping[str, str]] = None) -> str:
    """Substitute ``${env:NAME}`` placeholders from the environment.

    Raises:
        ParameterFileError: When a referenced variable is not set
    """
    environ = os.environ if environ is None else environ

    def substitute(match: "re.Match") -> str:
        name = match.group(1)
        if name not in environ:
            raise ParameterFileError(f"Unable to find environment variable {name}")
        return environ[name]

    return PLACEHOLDER.sub(substitute, text)


def _as_mapping(value: Any, key_name: str, value_name: str, field: str) -> Dict[str, str]:
    if value is None:
        return {}
    if isinstance(value, dict):
        return {str(k): "" if v is None else str(v) for k, v in value.items()}
    if isinstance(value, list):
        result = {}
        for item in value:
            if not isinstance(item, dict) or key_name not in item:
                raise ParameterFileError(f"Entries of '{field}' need a '{key_name}' key")
            result[str(item[key_name])] = str(item.get(value_name, ""))
        return result
    raise ParameterFileError(f"Field '{field}' must be a mapping or a list")


def parse_changeset_request(data: Any, base_dir: Path = Path(".")) -> ChangesetRequest:
    """Build a ChangesetRequest from parsed parameter file data.

    Args:
        data: Parsed YAML/JSON document
        base_dir: Directory that relative TemplateFile paths are resolved against

    Returns:
        Changeset request

    Raises:
        ParameterFileError: When required fields are missing or malformed
    """
    if not isinstance(data, dict):
        raise ParameterFileError("Parameter file must contain a mapping")
    stack_name = data.get("StackName")
    if not stack_name or not isinstance(stack_name, str):
        raise ParameterFileError("Required field 'StackName' is missing")

    template_body = data.get("TemplateBody")
    template_file = data.get("TemplateFile")
    if template_file and template_body is None:
        path = base_dir / template_file
        try:
            template_body = path.read_text(encoding="utf-8")
        except IOError as e:
            raise ParameterFileError(f"Unable to read template file {path}: {e}") from e
    if template_body is not None and not isinstance(template_body, str):
        # Inline YAML/JSON templates are re-serialized
        template_body = yaml.safe_dump(template_body, sort_keys=False)

    type_name = str(data.get("ChangeSetType", ChangesetType.GUESS.value)).upper()
    try:
        changeset_type = ChangesetType(type_name)
    except ValueError as e:
        raise ParameterFileError(f"Invalid ChangeSetType: {type_name}") from e

    capabilities = data.get("Capabilities") or []
    if not isinstance(capabilities, list):
        raise ParameterFileError("Field 'Capabilities' must be a list")

    request = ChangesetRequest(
        stack_name=stack_name,
        template_body=template_body,
        template_url=data.get("TemplateURL"),
        parameters=_as_mapping(data.get("Parameters"), "ParameterKey", "ParameterValue", "Parameters"),
        capabilities=[str(c) for c in capabilities],
        changeset_type=changeset_type,
        changeset_name=data.get("ChangeSetName"),
        description=data.get("Description"),
        tags=_as_mapping(data.get("Tags"), "Key", "Value", "Tags"),
        profile=data.get("profile"),
        region=data.get("region"),
        bucket=data.get("bucket"),
    )
    if request.template_body is None and not request.template_url:
        raise ParameterFileError(
            f"Stack {stack_name} needs one of 'TemplateBody', 'TemplateFile' or 'TemplateURL'"
        )
    return request


def load_changeset_request(path: Path, environ: Optional[Mapping[str, str]] = None) -> ChangesetRequest:
    """Read, render and parse a parameter file.

    Raises:
        ParameterFileError: When the file is missing, unrenderable or invalid
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except IOError as e:
        raise ParameterFileError(f"Unable to open file {path} (does it exist?): {e}") from e

    logger.debug(f"Parameter template {path}: {text}")
    rendered = render_parameter_text(text, environ)
    logger.debug(f"Rendered parameter file {path}: {rendered}")
    try:
        data = yaml.safe_load(rendered)
    except yaml.YAMLError as e:
        raise ParameterFileError(f"Unable to parse parameter file {path}: {e}") from e
    return parse_changeset_request(data, path.parent)
