"""League tables and summary-statistics text for report collaborators.

Numbers are formatted with ``PrecisionConfig`` so that every rendered cell
matches the precision used elsewhere in a report.
"""

import math
from typing import Optional

from netsynth.models.network import EffectMeasure
from netsynth.models.results import NodeSplitResult, PooledResult, RankingResult
from netsynth.traceability import DEFAULT_PRECISION, PrecisionConfig


def league_table(
    result: PooledResult,
    effect_measure: Optional[EffectMeasure] = None,
    exponentiate: bool = False,
    precision: PrecisionConfig = DEFAULT_PRECISION,
) -> dict[str, dict[str, str]]:
    """League table of every pairwise effect.

    ``table[row][column]`` is the effect of ``row`` relative to ``column``
    formatted as "effect [lower, upper]"; diagonal cells hold the treatment
    label.

    Args:
        result: Pooled consistency-model result
        effect_measure: Scale of the effects, used to pick decimals
        exponentiate: Report ratio measures on the natural scale
        precision: Number formatting
    """
    is_log_scale = bool(effect_measure and effect_measure.is_log_scale)
    transform = math.exp if exponentiate and is_log_scale else float

    table: dict[str, dict[str, str]] = {}
    for row in result.treatments:
        cells: dict[str, str] = {}
        for column in result.treatments:
            if row == column:
                cells[column] = result.label(row)
                continue
            ci = result.confidence_interval(row, column)
            effect = precision.format_effect(
                transform(result.effect(row, column)), is_log_scale
            )
            bounds = precision.format_ci(transform(ci.lower), transform(ci.upper), is_log_scale)
            cells[column] = f"{effect} {bounds}"
        table[row] = cells
    return table


def summarize(
    result: PooledResult,
    effect_measure: Optional[EffectMeasure] = None,
    ranking: Optional[RankingResult] = None,
    node_split: Optional[NodeSplitResult] = None,
    alpha: float = 0.05,
    precision: PrecisionConfig = DEFAULT_PRECISION,
) -> str:
    """Multi-line summary-statistics text of a network fit.

    Args:
        result: Pooled consistency-model result
        effect_measure: Scale of the effects
        ranking: Treatment ranking to list
        node_split: Inconsistency results; pairs with p < ``alpha`` are flagged
        alpha: Significance level for inconsistency flags
        precision: Number formatting

    Returns:
        Plain text, one statistic per line
    """
    is_log_scale = bool(effect_measure and effect_measure.is_log_scale)
    het = result.heterogeneity
    level = round(result.confidence_level * 100)

    model = result.model_kind.value + " effects"
    if het.tau_estimator:
        model += f" ({het.tau_estimator})"
    lines = [f"Network meta-analysis, {model}"]
    if effect_measure is not None:
        lines.append(f"Effect measure: {effect_measure.value}")
    lines.append(
        f"Treatments: {len(result.treatments)}; studies: {result.k}; "
        f"contrasts: {result.n_edges}; reference: {result.label(result.reference_treatment)}"
    )
    if result.excluded_studies:
        lines.append(f"Excluded studies: {', '.join(result.excluded_studies)}")

    lines.append(
        f"Heterogeneity: Q = {precision.format_q(het.q_statistic)} "
        f"(df = {het.df}, p = {precision.format_p_value(het.q_p_value)}); "
        f"tau² = {precision.format_tau_squared(het.tau_squared)}; "
        f"I² = {precision.format_i_squared(het.i_squared)} "
        f"({precision.interpret_i_squared(het.i_squared)})"
    )

    lines.append("")
    lines.append(
        f"Relative effects vs {result.label(result.reference_treatment)} ({level}% CI):"
    )
    for row in result.relative_effects():
        effect = precision.format_effect(row["effect"], is_log_scale)
        bounds = precision.format_ci(row["ci_lower"], row["ci_upper"], is_log_scale)
        lines.append(
            f"  {row['label']}: {effect} {bounds}, p = {precision.format_p_value(row['p_value'])}"
        )

    if ranking is not None:
        method = "P-score" if ranking.method == "p_score" else "SUCRA"
        lines.append("")
        lines.append(f"Ranking ({method}, {ranking.direction.value.replace('_', ' ')}):")
        for entry in ranking.ranks:
            lines.append(
                f"  {entry.rank}. {result.label(entry.treatment)} "
                f"{precision.format_score(entry.score)}"
            )

    if node_split is not None:
        estimable = node_split.estimable
        flagged = node_split.inconsistent(alpha)
        lines.append("")
        lines.append(
            f"Node-splitting: {len(estimable)} of {len(node_split.splits)} pairs estimable"
        )
        if flagged:
            for split in flagged:
                lines.append(
                    f"  {result.label(split.treatment_b)} vs {result.label(split.treatment_a)}: "
                    f"direct {precision.format_effect(split.direct_estimate, is_log_scale)}, "
                    f"indirect {precision.format_effect(split.indirect_estimate, is_log_scale)}, "
                    f"p = {precision.format_p_value(split.p_value)}"
                )
        elif estimable:
            lines.append(f"  No inconsistency detected at alpha = {alpha}")

    if result.warnings:
        lines.append("")
        lines.append("Warnings:")
        lines.extend(f"  - {warning}" for warning in result.warnings)

    return "\n".join(lines)
