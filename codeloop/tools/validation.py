from __future__ import annotations

from pathlib import Path

import jsonschema
from jsonschema.exceptions import best_match

from codeloop.tools.base import Tool
from codeloop.tools.schema import (
    ARRAY,
    NEW_PATH,
    PATH,
    Param,
    is_within,
    parameters_schema,
    resolve_workspace_path,
)

_FORMAT_CHECKER = jsonschema.FormatChecker()


class ToolValidator:
    @staticmethod
    def validate(
        tool: Tool,
        arguments: dict,
        workspace_root: Path | None = None,
    ) -> tuple[bool, str | None]:
        params = tool.parameters

        for name, param in params.items():
            if param.required and name not in arguments:
                return False, f"Missing required argument: '{name}'"

        validator = jsonschema.Draft202012Validator(
            parameters_schema(params), format_checker=_FORMAT_CHECKER
        )
        error = best_match(validator.iter_errors(arguments))
        if error is not None:
            return False, _describe(error, params)

        for name, value in arguments.items():
            param = params.get(name)
            if param is None:
                continue
            problem = _check_paths(name, param, value, workspace_root)
            if problem:
                return False, problem

        return True, None


def _describe(error: jsonschema.ValidationError, params: dict[str, Param]) -> str:
    name = str(error.path[0]) if error.path else ""
    param = params.get(name)
    if error.validator == "type" and param is not None:
        expected = param.kind
        if error.path and len(error.path) > 1 and param.items is not None:
            expected = param.items.kind
        return f"Invalid type for argument '{name}'. Expected: {expected}"
    if error.validator == "format" and error.validator_value == "regex":
        return f"Invalid regular expression pattern for argument '{name}': {error.instance!r}"
    if name:
        return f"Invalid value for argument '{name}': {error.message}"
    return error.message


def _check_paths(
    name: str, param: Param, value: object, root: Path | None
) -> str | None:
    if param.kind == ARRAY and param.items is not None and isinstance(value, list):
        for item in value:
            problem = _check_paths(name, param.items, item, root)
            if problem:
                return problem
        return None
    if param.kind not in (PATH, NEW_PATH) or not isinstance(value, str):
        return None

    base = root if root is not None else Path.cwd()
    resolved = resolve_workspace_path(base, value)
    if root is not None and not is_within(root, resolved):
        return f"Path for argument '{name}' is outside the workspace: {value}"
    if param.kind == PATH and not resolved.exists():
        return f"Path for argument '{name}' does not exist: {value}"
    return None
