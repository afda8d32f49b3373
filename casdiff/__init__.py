"""
casdiff - diff, agreement and bulk curation engine for multi-annotator span
and relation annotations.
"""

from .adapters import (
    ArcDiffAdapter,
    DiffAdapter,
    FeatureSpec,
    LayerSpec,
    SpanDiffAdapter,
    get_adapters,
)
from .agreement import (
    AgreementResult,
    CodingStudy,
    ConcreteAgreementMeasure,
    PairwiseAgreementResult,
    get_agreement,
    get_cohen_kappa_agreement,
    get_pairwise_agreement,
    get_pairwise_cohen_kappa_agreement,
    make_study,
)
from .bulk import (
    BulkAnnotationOperator,
    BulkOperationResult,
    MemoryAnnotationStore,
    SearchHit,
)
from .diff import Configuration, ConfigurationSet, DiffResult, do_diff
from .errors import (
    AnnotationConflictError,
    DiffConfigurationError,
    DiffError,
    MissingAdapterError,
    StackedAnnotationError,
)
from .iterators import DoubleIterator, overlapping, overlaps
from .position import ArcPosition, SpanPosition
from .search import DocumentIndex, IndexRegistry

__version__ = "0.3.0"

__all__ = [
    "AnnotationConflictError",
    "AgreementResult",
    "ArcDiffAdapter",
    "ArcPosition",
    "BulkAnnotationOperator",
    "BulkOperationResult",
    "CodingStudy",
    "ConcreteAgreementMeasure",
    "Configuration",
    "ConfigurationSet",
    "DiffAdapter",
    "DiffConfigurationError",
    "DiffError",
    "DiffResult",
    "DocumentIndex",
    "DoubleIterator",
    "FeatureSpec",
    "IndexRegistry",
    "LayerSpec",
    "MemoryAnnotationStore",
    "MissingAdapterError",
    "PairwiseAgreementResult",
    "SearchHit",
    "SpanDiffAdapter",
    "SpanPosition",
    "StackedAnnotationError",
    "do_diff",
    "get_adapters",
    "get_agreement",
    "get_cohen_kappa_agreement",
    "get_pairwise_agreement",
    "get_pairwise_cohen_kappa_agreement",
    "make_study",
    "overlapping",
    "overlaps",
]
