"""CSV reports of agreement studies."""

import csv
import io
import math

from .agreement import AgreementResult, PairwiseAgreementResult

CSV_HEADER = ["Type", "Layer", "Feature", "Position"]


def _cell(value) -> str:
    if value is None:
        return "null"
    if isinstance(value, tuple):
        return ",".join(_cell(v) for v in value)
    return str(value)


def agreement_to_csv(result: AgreementResult) -> str:
    """
    Write the items of an agreement study as CSV.

    A few "#" comment lines with the study size come first, then one row
    per complete configuration set with one column per annotator.
    """
    output = io.StringIO()
    output.write(f"# Category count: {result.study.category_count}\n")
    output.write(f"# Item count: {result.study.item_count}\n")
    output.write(f"# Relevant position count: {result.relevant_set_count}\n")

    writer = csv.writer(output, lineterminator="\n")
    writer.writerow(CSV_HEADER + list(result.annotators))
    for config_set, item in zip(result.complete_sets, result.study.items):
        position = config_set.position
        writer.writerow(
            [type(position).__name__, position.type, result.feature,
             position.to_minimal_string()]
            + [_cell(value) for value in item]
        )
    return output.getvalue()


def pairwise_to_csv(result: PairwiseAgreementResult) -> str:
    """One row per annotator pair with the agreement value and study size."""
    output = io.StringIO()
    writer = csv.DictWriter(
        output,
        fieldnames=["annotator_1", "annotator_2", "agreement", "items", "differences",
                    "unusable"],
        lineterminator="\n",
    )
    writer.writeheader()
    for first, second in result.pairs():
        pair = result.get(first, second)
        writer.writerow({
            "annotator_1": first,
            "annotator_2": second,
            "agreement": "" if math.isnan(pair.agreement) else f"{pair.agreement:.4f}",
            "items": pair.study.item_count,
            "differences": pair.diff_set_count,
            "unusable": pair.unusable_set_count,
        })
    return output.getvalue()
