"""Custom exceptions for configuration management."""

from typing import List, Optional

from pydantic import ValidationError


class ConfigurationError(Exception):
    """
    Exception raised when configuration validation fails.

    Stores every validation error found plus suggestions, and formats them
    into a single readable message.
    """

    def __init__(
        self,
        message: str,
        errors: Optional[List[str]] = None,
        suggestions: Optional[List[str]] = None,
    ):
        """
        Initialize ConfigurationError.

        Args:
            message: Primary error message
            errors: List of specific validation errors
            suggestions: List of helpful suggestions to fix the errors
        """
        self.message = message
        self.errors = errors or []
        self.suggestions = suggestions or []
        super().__init__(self._format_message())

    @classmethod
    def from_validation_error(
        cls, exc: ValidationError, suggestions: Optional[List[str]] = None
    ) -> "ConfigurationError":
        """Translate a pydantic ValidationError into readable field errors."""
        errors = []
        for error in exc.errors():
            field_path = " -> ".join(str(loc) for loc in error["loc"]) or "<root>"
            if error["type"] == "missing":
                errors.append(f"Missing required field: {field_path}")
            elif error["type"].endswith("_type"):
                expected = error["type"][: -len("_type")]
                errors.append(
                    f"Invalid type for '{field_path}': expected {expected}, got {error.get('input')!r}"
                )
            else:
                errors.append(f"{field_path}: {error['msg']}")

        return cls(
            "Configuration validation failed",
            errors=errors,
            suggestions=suggestions
            or [
                "Review config.example.yaml for the expected layout",
                "Verify field types and value ranges",
            ],
        )

    def _format_message(self) -> str:
        parts = [self.message]

        if self.errors:
            parts.append("\nValidation Errors:")
            for i, error in enumerate(self.errors, 1):
                parts.append(f"  {i}. {error}")

        if self.suggestions:
            parts.append("\nSuggestions:")
            for suggestion in self.suggestions:
                parts.append(f"  - {suggestion}")

        return "\n".join(parts)
