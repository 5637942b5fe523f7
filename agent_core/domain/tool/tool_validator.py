# Parameter & output validation
from typing import Any, Dict, List

import jsonschema
from pydantic import BaseModel, Field, ValidationError

from agent_core.domain.orchestration.core.errors import ToolOutputValidationError
from agent_core.domain.tool.tool import Tool


class ValidationResult(BaseModel):
    is_valid: bool
    errors: List[str] = Field(default_factory=list)


class ToolParameterValidator:
    @staticmethod
    def validate_tool_call(tool: Tool, parameters: Dict[str, Any]) -> ValidationResult:
        schema = tool.parameters

        try:
            jsonschema.validators.validator_for(schema).check_schema(schema)
        except jsonschema.SchemaError as e:
            return ValidationResult(is_valid=False, errors=[f"Invalid parameter schema: {e.message}"])

        validator = jsonschema.validators.validator_for(schema)(schema)
        errors = [
            f"{'/'.join(str(p) for p in error.absolute_path) or '<root>'}: {error.message}"
            for error in validator.iter_errors(parameters)
        ]

        return ValidationResult(is_valid=not errors, errors=errors)


def validate_tool_output(tool: Tool, output: Any) -> Any:
    """Validate output against the tool's output schema, if it has one"""

    if tool.output_schema is None:
        return output

    try:
        return tool.output_schema.model_validate(output)
    except ValidationError as e:
        raise ToolOutputValidationError(
            f"{e.error_count()} validation error(s) for {tool.output_schema.__name__}",
            validation_errors=e.errors(include_url=False),
            actual_output=output
        ) from e
