"""
Diff adapters tell the diff engine how to read annotations of one type.

An adapter turns an opaque annotation instance into a Position and extracts
the label features that decide whether two annotators agree. Instances are
read either as mappings (``instance["begin"]``) or as plain objects
(``instance.begin``), so callers can hand in dicts, dataclasses or ORM rows.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from .errors import DiffConfigurationError
from .position import ArcPosition, SpanPosition

LAYER_SPAN = "span"
LAYER_RELATION = "relation"
LAYER_CHAIN = "chain"

_MISSING = object()


def read_value(instance: Any, name: str, default: Any = None) -> Any:
    """Read a named value from a mapping or an attribute."""
    if instance is None:
        return default
    if isinstance(instance, Mapping):
        return instance.get(name, default)
    return getattr(instance, name, default)


class DiffAdapter:
    """Base adapter; subclasses define how positions are built."""

    def __init__(self, type_name: str, label_features: Iterable[str] = ()):
        self.type = type_name
        self.label_features = frozenset(label_features)

    def get_position(self, instance: Any):
        raise NotImplementedError

    def offsets(self, instance: Any) -> tuple[int, int]:
        """Begin and end used to scope a diff to a window of the text."""
        raise NotImplementedError

    def get_feature_value(self, instance: Any, feature: str) -> Any:
        value = read_value(instance, feature, _MISSING)
        if value is _MISSING:
            features = read_value(instance, "features")
            value = read_value(features, feature) if features is not None else None
        return value

    def get_label(self, instance: Any) -> tuple:
        """Label feature values as a sorted tuple of (feature, value) pairs."""
        return tuple(
            (feature, _freeze(self.get_feature_value(instance, feature)))
            for feature in sorted(self.label_features)
        )

    def has_feature(self, feature: str) -> bool:
        return feature in self.label_features

    def covered_by(self, instance: Any, begin: int, end: int) -> bool:
        inst_begin, inst_end = self.get_position(instance).bounds()
        return begin <= inst_begin and inst_end <= end

    def __repr__(self):
        return f"{type(self).__name__}(type={self.type!r}, label_features={sorted(self.label_features)})"


class SpanDiffAdapter(DiffAdapter):
    """Span annotations are positioned by their begin/end offsets."""

    POS: "SpanDiffAdapter"
    NER: "SpanDiffAdapter"

    def __init__(self, type_name: str, *label_features: str,
                 begin_feature: str = "begin", end_feature: str = "end"):
        super().__init__(type_name, label_features)
        self.begin_feature = begin_feature
        self.end_feature = end_feature

    def offsets(self, instance):
        return (read_value(instance, self.begin_feature),
                read_value(instance, self.end_feature))

    def get_position(self, instance) -> SpanPosition:
        begin, end = self.offsets(instance)
        return SpanPosition(self.type, begin, end, read_value(instance, "text"))


class ArcDiffAdapter(DiffAdapter):
    """Relations are positioned by the offsets of their two endpoints."""

    DEPENDENCY: "ArcDiffAdapter"

    def __init__(self, type_name: str, source_feature: str, target_feature: str,
                 *label_features: str):
        super().__init__(type_name, label_features)
        self.source_feature = source_feature
        self.target_feature = target_feature

    def _endpoint(self, instance, feature: str):
        endpoint = read_value(instance, feature)
        if endpoint is None:
            raise DiffConfigurationError(
                f"Type [{self.type}]: relation has no [{feature}] endpoint"
            )
        return endpoint

    def endpoints(self, instance):
        return (self._endpoint(instance, self.source_feature),
                self._endpoint(instance, self.target_feature))

    def offsets(self, instance):
        return self.get_position(instance).bounds()

    def get_position(self, instance) -> ArcPosition:
        source, target = self.endpoints(instance)
        return ArcPosition(
            self.type,
            read_value(source, "begin"), read_value(source, "end"),
            read_value(target, "begin"), read_value(target, "end"),
            source_text=read_value(source, "text"),
            target_text=read_value(target, "text"),
        )


SpanDiffAdapter.POS = SpanDiffAdapter("pos", "value")
SpanDiffAdapter.NER = SpanDiffAdapter("ner", "value")
ArcDiffAdapter.DEPENDENCY = ArcDiffAdapter("dependency", "governor", "dependent", "dependency_type")


@dataclass
class FeatureSpec:
    """A feature of an annotation layer."""
    name: str
    enabled: bool = True


@dataclass
class LayerSpec:
    """Schema of an annotation layer in a project."""
    name: str
    layer_type: str = LAYER_SPAN
    features: list[FeatureSpec] = field(default_factory=list)
    source_feature: Optional[str] = None
    target_feature: Optional[str] = None
    allow_stacking: bool = False


def get_adapters(layers: Iterable[LayerSpec]) -> list[DiffAdapter]:
    """Build one adapter per span/relation layer. Chain layers are skipped."""
    adapters = []
    for layer in layers:
        label_features = [f.name for f in layer.features if f.enabled]
        if layer.layer_type == LAYER_SPAN:
            adapters.append(SpanDiffAdapter(layer.name, *label_features))
        elif layer.layer_type == LAYER_RELATION:
            if not layer.source_feature or not layer.target_feature:
                raise DiffConfigurationError(
                    f"Relation layer [{layer.name}] needs source and target features"
                )
            adapters.append(ArcDiffAdapter(
                layer.name, layer.source_feature, layer.target_feature, *label_features
            ))
        elif layer.layer_type == LAYER_CHAIN:
            # Chains are not diffed
            continue
        else:
            raise DiffConfigurationError(
                f"Unknown layer type [{layer.layer_type}] for layer [{layer.name}]"
            )
    return adapters


def _freeze(value):
    if isinstance(value, list):
        return tuple(_freeze(v) for v in value)
    if isinstance(value, set):
        return frozenset(value)
    if isinstance(value, dict):
        return tuple(sorted((k, _freeze(v)) for k, v in value.items()))
    return value
