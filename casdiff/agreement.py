"""
Inter-annotator agreement over a diff result.

A coding study is built from the configuration sets of one annotation type:
every set in which all selected annotators made exactly one annotation
becomes an item whose units are the annotators' values for one feature.
Sets that cannot be used are sorted into diagnostic buckets instead of
aborting the computation.

Measures:
- Cohen's kappa: exactly two raters, no missing values
- Fleiss' kappa: any number of raters, no missing values
- Krippendorff's alpha (nominal): any number of raters, missing values allowed

A vanishing chance-agreement denominator and an empty study both yield NaN.
"""

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from itertools import combinations
from typing import Any, Iterable, Optional, Sequence

import numpy as np

from .diff import ConfigurationSet, DiffResult
from .errors import DiffConfigurationError

logger = logging.getLogger(__name__)


class CodingStudy:
    """Items coded by a fixed number of raters. None marks a missing value."""

    def __init__(self, rater_count: int):
        if rater_count < 1:
            raise ValueError("A coding study needs at least one rater")
        self.rater_count = rater_count
        self.items: list[tuple] = []

    def add_item(self, *values) -> None:
        if len(values) != self.rater_count:
            raise ValueError(
                f"Expected {self.rater_count} values per item, got {len(values)}"
            )
        self.items.append(tuple(values))

    @property
    def item_count(self) -> int:
        return len(self.items)

    @property
    def categories(self) -> list:
        """Distinct non-missing values in order of first appearance."""
        seen = {}
        for item in self.items:
            for value in item:
                if value is not None and value not in seen:
                    seen[value] = None
        return list(seen)

    @property
    def category_count(self) -> int:
        return len(self.categories)

    def has_missing_values(self) -> bool:
        return any(value is None for item in self.items for value in item)

    def coding_matrix(self) -> np.ndarray:
        """items x raters matrix of category indices, -1 for missing values."""
        index = {category: i for i, category in enumerate(self.categories)}
        matrix = np.full((self.item_count, self.rater_count), -1, dtype=int)
        for i, item in enumerate(self.items):
            for r, value in enumerate(item):
                if value is not None:
                    matrix[i, r] = index[value]
        return matrix

    def count_matrix(self) -> np.ndarray:
        """items x categories matrix: how many raters chose each category."""
        coding = self.coding_matrix()
        counts = np.zeros((self.item_count, self.category_count))
        rows, raters = np.nonzero(coding >= 0)
        np.add.at(counts, (rows, coding[rows, raters]), 1)
        return counts


def _require_complete(study: CodingStudy, name: str) -> None:
    if study.has_missing_values():
        raise ValueError(f"{name} does not support missing values")


def cohen_kappa(study: CodingStudy) -> float:
    if study.rater_count != 2:
        raise ValueError(
            f"Cohen's kappa requires exactly two raters, got {study.rater_count}"
        )
    _require_complete(study, "Cohen's kappa")
    if study.item_count == 0:
        return math.nan

    coding = study.coding_matrix()
    n_categories = study.category_count
    contingency = np.zeros((n_categories, n_categories))
    np.add.at(contingency, (coding[:, 0], coding[:, 1]), 1)

    n = np.sum(contingency)
    p_o = np.trace(contingency) / n
    row_sums = np.sum(contingency, axis=1)
    col_sums = np.sum(contingency, axis=0)
    p_e = np.sum(row_sums * col_sums) / (n * n)

    if np.isclose(p_e, 1.0):
        return math.nan
    return float((p_o - p_e) / (1 - p_e))


def fleiss_kappa(study: CodingStudy) -> float:
    _require_complete(study, "Fleiss' kappa")
    if study.item_count == 0 or study.rater_count < 2:
        return math.nan

    counts = study.count_matrix()
    n = study.rater_count
    P_i = (np.sum(counts * counts, axis=1) - n) / (n * (n - 1))
    P_bar = np.mean(P_i)
    p_j = np.sum(counts, axis=0) / (study.item_count * n)
    P_e = np.sum(p_j ** 2)

    if np.isclose(P_e, 1.0):
        return math.nan
    return float((P_bar - P_e) / (1 - P_e))


def krippendorff_alpha_nominal(study: CodingStudy) -> float:
    if study.item_count == 0:
        return math.nan

    counts = study.count_matrix()
    pairable = np.sum(counts, axis=1)
    # Items coded by fewer than two raters carry no pairing information
    counts = counts[pairable >= 2]
    pairable = pairable[pairable >= 2]
    if counts.shape[0] == 0:
        return math.nan

    # Coincidence matrix: o_ck = sum_u n_uc * (n_uk - [c == k]) / (m_u - 1)
    weights = 1.0 / (pairable - 1)
    coincidence = np.einsum("u,uc,uk->ck", weights, counts, counts)
    coincidence -= np.diag(np.sum(counts * weights[:, None], axis=0))

    n_c = np.sum(coincidence, axis=1)
    n = np.sum(n_c)
    if n <= 1:
        return math.nan

    off_diagonal = ~np.eye(len(n_c), dtype=bool)
    observed = np.sum(coincidence[off_diagonal])
    expected = np.sum(np.outer(n_c, n_c)[off_diagonal])
    if np.isclose(expected, 0.0):
        return math.nan
    return float(1 - (n - 1) * observed / expected)


class ConcreteAgreementMeasure(Enum):
    COHEN_KAPPA_AGREEMENT = ("cohen_kappa", False)
    FLEISS_KAPPA_AGREEMENT = ("fleiss_kappa", False)
    KRIPPENDORFF_ALPHA_NOMINAL_AGREEMENT = ("krippendorff_alpha_nominal", True)

    def __init__(self, key: str, null_value_supported: bool):
        self.key = key
        self.null_value_supported = null_value_supported

    @classmethod
    def from_key(cls, key: str) -> "ConcreteAgreementMeasure":
        for measure in cls:
            if measure.key == key or measure.name == key:
                return measure
        raise ValueError(
            f"Unknown agreement measure [{key}], expected one of {[m.key for m in cls]}"
        )

    def calculate(self, study: CodingStudy) -> float:
        if self is ConcreteAgreementMeasure.COHEN_KAPPA_AGREEMENT:
            return cohen_kappa(study)
        if self is ConcreteAgreementMeasure.FLEISS_KAPPA_AGREEMENT:
            return fleiss_kappa(study)
        return krippendorff_alpha_nominal(study)


@dataclass
class AgreementResult:
    """A coding study plus the configuration sets that did or did not make it in."""
    type: str
    feature: str
    diff: DiffResult
    study: CodingStudy
    annotators: list[str]
    complete_sets: list[ConfigurationSet] = field(default_factory=list)
    irrelevant_sets: list[ConfigurationSet] = field(default_factory=list)
    sets_with_differences: list[ConfigurationSet] = field(default_factory=list)
    incomplete_sets_by_position: list[ConfigurationSet] = field(default_factory=list)
    incomplete_sets_by_label: list[ConfigurationSet] = field(default_factory=list)
    plurality_sets: list[ConfigurationSet] = field(default_factory=list)
    exclude_incomplete: bool = True
    agreement: float = math.nan
    measure: Optional[ConcreteAgreementMeasure] = None

    @property
    def total_set_count(self) -> int:
        return len(self.diff.positions)

    @property
    def relevant_set_count(self) -> int:
        return self.total_set_count - len(self.irrelevant_sets)

    @property
    def complete_set_count(self) -> int:
        return len(self.complete_sets)

    @property
    def unusable_set_count(self) -> int:
        return (len(self.incomplete_sets_by_position) + len(self.incomplete_sets_by_label)
                + len(self.plurality_sets))

    @property
    def diff_set_count(self) -> int:
        return len(self.sets_with_differences)

    def non_null_count(self, annotator: str) -> int:
        column = self.annotators.index(annotator)
        return sum(1 for item in self.study.items if item[column] is not None)

    def is_all_null(self, annotator: str) -> bool:
        return self.non_null_count(annotator) == 0

    def __str__(self):
        return (f"AgreementResult [type={self.type}, feature={self.feature}, "
                f"diffs={self.diff_set_count}, unusableSets={self.unusable_set_count}, "
                f"agreement={self.agreement}]")


def make_study(diff: DiffResult, type_name: str, feature: str,
               annotators: Optional[Iterable[str]] = None,
               exclude_incomplete: bool = True,
               null_labels_as_empty: bool = True) -> AgreementResult:
    """
    Build the coding study for one feature of one annotation type.

    Annotators default to the annotators of the diff and are sorted so the
    study columns are stable. Positions of other types are not considered
    at all; positions none of the annotators touched are irrelevant.
    """
    users = sorted(diff.annotators if annotators is None else annotators)
    study = CodingStudy(max(len(users), 1))
    result = AgreementResult(type_name, feature, diff, study, users,
                             exclude_incomplete=exclude_incomplete)

    adapter = diff.get_diff_adapter(type_name)
    if adapter is None:
        # Nothing was diffed for this type
        result.irrelevant_sets.extend(diff.configuration_sets)
        return result
    if not adapter.has_feature(feature):
        raise DiffConfigurationError(
            f"Type [{type_name}] has no feature called [{feature}]"
        )

    for config_set in diff.configuration_sets:
        if config_set.type != type_name:
            continue

        if not any(user in config_set.entries for user in users):
            result.irrelevant_sets.append(config_set)
            continue

        values = _study_values(result, config_set, users, feature,
                               exclude_incomplete, null_labels_as_empty)
        if values is None:
            continue

        if len(set(values)) > 1:
            result.sets_with_differences.append(config_set)
        result.complete_sets.append(config_set)
        study.add_item(*values)

    logger.debug("Study for [%s/%s]: %d items, %d unusable sets", type_name, feature,
                 study.item_count, result.unusable_set_count)
    return result


def _study_values(result: AgreementResult, config_set: ConfigurationSet,
                  users: Sequence[str], feature: str, exclude_incomplete: bool,
                  null_labels_as_empty: bool) -> Optional[list]:
    """
    Unit values of one set, or None if the set is not rated. A set that
    cannot be used is recorded in exactly one diagnostic bucket.
    """
    present = [user for user in users if user in config_set.entries]

    # Several annotations of one user at one position cannot be rated
    for user in present:
        if len(config_set.get_configurations(user)) > 1 or len(config_set.entries[user]) > 1:
            result.plurality_sets.append(config_set)
            return None

    incomplete = len(present) < len(users)
    if incomplete:
        result.incomplete_sets_by_position.append(config_set)
        if exclude_incomplete:
            return None

    values: list[Any] = []
    for user in users:
        if user not in config_set.entries:
            values.append(None)
            continue
        value = config_set.get_configurations(user)[0].label_dict().get(feature)
        if value is None and null_labels_as_empty:
            value = ""
        if value is None:
            if not incomplete:
                result.incomplete_sets_by_label.append(config_set)
                incomplete = True
            if exclude_incomplete:
                return None
        values.append(value)
    return values


def get_agreement(measure: ConcreteAgreementMeasure, exclude_incomplete: bool,
                  diff: DiffResult, type_name: str, feature: str,
                  annotators: Optional[Iterable[str]] = None) -> AgreementResult:
    """Compute one agreement value over the given annotators."""
    users = list(diff.annotators if annotators is None else annotators)
    if measure is ConcreteAgreementMeasure.COHEN_KAPPA_AGREEMENT and len(users) != 2:
        raise ValueError(f"Cohen's kappa requires exactly two annotators, got {len(users)}")

    result = make_study(diff, type_name, feature, users, exclude_incomplete)
    result.measure = measure
    if result.study.item_count > 0:
        result.agreement = measure.calculate(result.study)
    else:
        result.agreement = math.nan
    return result


def get_cohen_kappa_agreement(diff: DiffResult, type_name: str, feature: str,
                              annotators: Optional[Iterable[str]] = None) -> AgreementResult:
    return get_agreement(ConcreteAgreementMeasure.COHEN_KAPPA_AGREEMENT, True,
                         diff, type_name, feature, annotators)


class PairwiseAgreementResult:
    """Triangle table of agreement results keyed by unordered annotator pair."""

    def __init__(self, annotators: Iterable[str] = ()):
        self.annotators: list[str] = list(annotators)
        self._results: dict[frozenset, AgreementResult] = {}

    def add(self, first: str, second: str, result: AgreementResult) -> None:
        for annotator in (first, second):
            if annotator not in self.annotators:
                self.annotators.append(annotator)
        self._results[frozenset((first, second))] = result

    def get(self, first: str, second: str) -> Optional[AgreementResult]:
        return self._results.get(frozenset((first, second)))

    def pairs(self) -> list[tuple[str, str]]:
        return [(a, b) for a, b in combinations(self.annotators, 2)
                if frozenset((a, b)) in self._results]

    def __len__(self):
        return len(self._results)


def get_pairwise_agreement(measure: ConcreteAgreementMeasure, exclude_incomplete: bool,
                           diff: DiffResult, type_name: str, feature: str,
                           annotators: Optional[Iterable[str]] = None) -> PairwiseAgreementResult:
    users = list(diff.annotators if annotators is None else annotators)
    result = PairwiseAgreementResult(users)
    for first, second in combinations(users, 2):
        result.add(first, second, get_agreement(
            measure, exclude_incomplete, diff, type_name, feature, [first, second]
        ))
    return result


def get_pairwise_cohen_kappa_agreement(diff: DiffResult, type_name: str, feature: str,
                                       annotators: Optional[Iterable[str]] = None
                                       ) -> PairwiseAgreementResult:
    return get_pairwise_agreement(ConcreteAgreementMeasure.COHEN_KAPPA_AGREEMENT, True,
                                  diff, type_name, feature, annotators)
