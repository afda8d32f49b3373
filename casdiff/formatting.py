"""
Text rendering of diff and agreement results.

Produces chat and terminal friendly output: emoji status markers, box
drawing rules and score bars. Used by the service's text format and by the
command line client.
"""

import math

from .agreement import AgreementResult, PairwiseAgreementResult
from .bulk import BulkOperationResult
from .diff import DiffResult

# Status emoji for configuration sets
STATUS_EMOJI = {
    "agree": "✅",
    "disagree": "❌",
    "incomplete": "➖",
}

# Agreement color bar thresholds (Landis & Koch style bands)
AGREEMENT_BANDS = [
    (0.8, "🟢"),
    (0.6, "🟡"),
    (0.0, "🟠"),
]


def format_value(value: float) -> str:
    """Agreement value with two decimals, NaN shown as n/a."""
    if value is None or math.isnan(value):
        return "n/a"
    return f"{value:.2f}"


def agreement_marker(value: float) -> str:
    if value is None or math.isnan(value):
        return "❓"
    for threshold, marker in AGREEMENT_BANDS:
        if value >= threshold:
            return marker
    return "🔴"


def agreement_bar(value: float, width: int = 10) -> str:
    """Bar for a value in [-1, 1]; negative values render as an empty bar."""
    if value is None or math.isnan(value):
        return "░" * width
    filled = max(0, min(width, int(round(value * width))))
    return "█" * filled + "░" * (width - filled)


def format_diff(result: DiffResult, only_differences: bool = False) -> str:
    """
    Format a diff result as one line per configuration set.

    Example line: "❌ pos 4-7 [cat] alice=NN | bob=VB"
    """
    lines = []
    lines.append(f"🔍 **Diff** ({', '.join(result.annotators) or 'no annotators'})")
    lines.append("═" * 50)

    shown = 0
    for config_set in result.configuration_sets:
        agree = result.is_agreement(config_set)
        complete = result.is_complete(config_set)
        if only_differences and agree and complete:
            continue
        if not complete:
            status = STATUS_EMOJI["incomplete"]
        elif agree:
            status = STATUS_EMOJI["agree"]
        else:
            status = STATUS_EMOJI["disagree"]

        parts = []
        for cfg in config_set.configurations:
            label = ",".join(f"{v}" for _, v in cfg.label) or "∅"
            parts.append(f"{'+'.join(cfg.annotators)}={label}")
        lines.append(f"{status} {config_set.type} "
                     f"{config_set.position.to_minimal_string()} {' | '.join(parts)}")
        shown += 1

    if shown == 0:
        lines.append("No differences." if only_differences else "No positions.")

    lines.append("─" * 50)
    differing = len(result.differing_configuration_sets)
    incomplete = len(result.incomplete_configuration_sets)
    lines.append(f"Positions: {len(result)}  Differing: {differing}  Incomplete: {incomplete}")
    return "\n".join(lines)


def format_agreement(result: AgreementResult) -> str:
    """Format a single agreement result with its diagnostic counts."""
    lines = []
    measure = result.measure.key if result.measure else "agreement"
    lines.append(f"📊 **{measure}** on {result.type}/{result.feature}")
    lines.append("─" * 40)
    lines.append(f"   {agreement_marker(result.agreement)} "
                 f"{agreement_bar(result.agreement)} {format_value(result.agreement)}")
    lines.append(f"   Annotators: {', '.join(result.annotators)}")
    lines.append(f"   Items: {result.study.item_count}  "
                 f"Categories: {result.study.category_count}")
    lines.append(f"   Relevant positions: {result.relevant_set_count}/{result.total_set_count}")
    lines.append(f"   With differences: {result.diff_set_count}")

    if result.unusable_set_count:
        lines.append(f"⚠️ Unusable positions: {result.unusable_set_count}")
        lines.append(f"   • incomplete (position): {len(result.incomplete_sets_by_position)}")
        lines.append(f"   • incomplete (label): {len(result.incomplete_sets_by_label)}")
        lines.append(f"   • stacked: {len(result.plurality_sets)}")

    return "\n".join(lines)


def format_pairwise_table(result: PairwiseAgreementResult) -> str:
    """
    Format a pairwise agreement table.

    The lower triangle holds the agreement values, the diagonal is marked
    with a dash.
    """
    annotators = result.annotators
    if len(annotators) < 2:
        return "📊 Need at least two annotators for a pairwise table."

    width = max(6, max(len(a) for a in annotators))
    lines = ["📊 **Pairwise Agreement**"]
    header = " " * width + " │ " + " ".join(a[:width].rjust(width) for a in annotators)
    lines.append(header)
    lines.append("─" * width + "─┼─" + "─" * ((width + 1) * len(annotators) - 1))

    for row, first in enumerate(annotators):
        cells = []
        for col, second in enumerate(annotators):
            if row == col:
                cells.append("—".rjust(width))
            elif col > row:
                cells.append("".rjust(width))
            else:
                pair = result.get(first, second)
                cells.append(format_value(pair.agreement if pair else math.nan).rjust(width))
        lines.append(first[:width].ljust(width) + " │ " + " ".join(cells))

    return "\n".join(lines)


def format_bulk_result(result: BulkOperationResult) -> str:
    if not result.changed and not result.conflict and not result.skipped_documents:
        return "ℹ️ No changes"
    lines = []
    if result.created:
        lines.append(f"✅ Created annotations: {result.created}")
    if result.updated:
        lines.append(f"✅ Updated annotations: {result.updated}")
    if result.deleted:
        lines.append(f"✅ Deleted annotations: {result.deleted}")
    if result.conflict:
        lines.append(f"⚠️ Annotations skipped due to conflicts: {result.conflict}")
    if result.skipped_documents:
        lines.append(f"⏭️ Skipped documents: {', '.join(result.skipped_documents)}")
    return "\n".join(lines)


def format_error(message: str) -> str:
    """Format an error message."""
    return f"❌ **Error:** {message}"
