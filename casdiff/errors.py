"""
Exceptions raised by the diff and agreement engine.
"""


class DiffError(Exception):
    """Base class for all engine errors."""


class DiffConfigurationError(DiffError, ValueError):
    """Inconsistent adapter setup or malformed annotation offsets."""


class MissingAdapterError(DiffConfigurationError):
    """No diff adapter was registered for a requested annotation type."""

    def __init__(self, type_name: str):
        super().__init__(f"No diff adapter for type [{type_name}]")
        self.type_name = type_name


class StackedAnnotationError(DiffConfigurationError):
    """An annotator has more than one annotation at a single position."""

    def __init__(self, annotator: str, position):
        super().__init__(
            f"Annotator [{annotator}] has stacked annotations at {position}"
        )
        self.annotator = annotator
        self.position = position


class AnnotationConflictError(DiffError):
    """An annotation could not be created because it clashes with an existing one."""
