"""Diagnostic reconstruction: classify the passage's defect and repair only that defect.

Diagnosis and repair come back from a single completion:

    DIAGNOSIS: weak-argument, elliptical
    SUMMARY: The conclusion skips the step from A to B.
    REWRITE:
    <repaired passage>
"""

import re
from collections.abc import AsyncIterator
from dataclasses import dataclass

from app.chains.reconstruction_common import RunContext
from app.chains.reconstruction_prompts import (
    DIAGNOSTIC_AGGRESSIVE_RULE,
    DIAGNOSTIC_CONSERVATIVE_RULE,
    DIAGNOSTIC_PROMPT,
    EMPIRICAL_SUPPORT_RULE,
    optional_line,
)
from app.core.errors import ProviderMalformedResponse
from app.core.logging import get_logger
from app.core.schemas_reconstruction import DIAGNOSIS_LABELS, DiagnosticPlan, JobInput, StreamEvent
from app.core.text_utils import clean_markup, find_lock_violations

logger = get_logger(__name__)

_DIAGNOSIS_RE = re.compile(r"^\W*DIAGNOS[IE]S\W*:?\s*(.*)$", re.IGNORECASE | re.MULTILINE)
_SUMMARY_RE = re.compile(r"^\W*SUMMARY\W*:?\s*(.*)$", re.IGNORECASE | re.MULTILINE)
_REWRITE_RE = re.compile(r"^\W*(?:REWRITE|REPAIRED(?: TEXT)?|RECONSTRUCTION)\W*:?[ \t]*\n?", re.IGNORECASE | re.MULTILINE)
_LABEL_RE = re.compile("|".join(re.escape(label) for label in DIAGNOSIS_LABELS), re.IGNORECASE)


@dataclass
class DiagnosticResult:
    labels: list[str]
    summary: str
    repaired_text: str


def build_diagnostic_prompt(job: JobInput, plan: DiagnosticPlan) -> str:
    conservative = plan.aggressiveness == "conservative"
    return DIAGNOSTIC_PROMPT.format(
        scope="that one defect" if conservative else "every defect you found",
        mode_rule=(DIAGNOSTIC_CONSERVATIVE_RULE if conservative else DIAGNOSTIC_AGGRESSIVE_RULE)
        + " "
        + EMPIRICAL_SUPPORT_RULE,
        domain_line=optional_line("TARGET DOMAIN", job.target_domain),
        instructions_line=optional_line("ADDITIONAL INSTRUCTIONS", job.custom_instructions),
        text=job.text,
    )


def parse_diagnostic_response(raw: str, aggressiveness: str, provider: str | None = None) -> DiagnosticResult:
    """
    Split a diagnostic completion into labels, summary and repaired text.

    Conservative runs keep only the first label found.

    Raises:
        ProviderMalformedResponse: If no known label or no repaired text is present
    """
    diagnosis_match = _DIAGNOSIS_RE.search(raw)
    search_area = diagnosis_match.group(1) if diagnosis_match else raw[:300]
    labels: list[str] = []
    for match in _LABEL_RE.finditer(search_area):
        label = match.group(0).lower()
        if label not in labels:
            labels.append(label)
    if not labels:
        raise ProviderMalformedResponse("Diagnostic response names no known diagnosis", provider=provider)
    if aggressiveness == "conservative":
        labels = labels[:1]

    summary_match = _SUMMARY_RE.search(raw)
    summary = summary_match.group(1).strip() if summary_match else ""

    rewrite_match = _REWRITE_RE.search(raw)
    if rewrite_match:
        body = raw[rewrite_match.end() :]
    else:
        # No marker: everything after the header lines
        last_header = max(
            (m.end() for m in (diagnosis_match, summary_match) if m is not None),
            default=0,
        )
        body = raw[last_header:]

    repaired = clean_markup(body)
    if not repaired:
        raise ProviderMalformedResponse("Diagnostic response has no repaired text", provider=provider)
    return DiagnosticResult(labels=labels, summary=summary, repaired_text=repaired)


def render_diagnostic_output(result: DiagnosticResult) -> str:
    header = f"DIAGNOSIS: {', '.join(result.labels)}."
    if result.summary:
        header = f"{header} {result.summary}"
    return f"{header}\n\n{result.repaired_text}"


async def stream_diagnostic_reconstruction(
    ctx: RunContext,
    plan: DiagnosticPlan,
    job: JobInput,
) -> AsyncIterator[StreamEvent]:
    """Single attempt; any provider error (including an unparseable answer) fails the job."""
    logger.info(f"Running diagnostic reconstruction ({plan.aggressiveness})", extra=ctx.log_extra)
    yield ctx.progress("diagnosing", message=f"Diagnosing ({plan.aggressiveness})", total=1)

    if ctx.abort_requested():
        yield ctx.aborted("", 0)
        return

    raw = await ctx.provider.complete(build_diagnostic_prompt(job, plan), ctx.options)
    result = parse_diagnostic_response(raw, plan.aggressiveness, provider=ctx.provider.name)

    lock_report = find_lock_violations(
        job.text,
        result.repaired_text,
        allow_new_numbers="needs-empirical-support" in result.labels,
    )
    if not lock_report.ok:
        logger.warning(f"Lock violations in repaired text: {lock_report.to_dict()}", extra=ctx.log_extra)

    yield ctx.complete(
        render_diagnostic_output(result),
        job.text,
        aggressiveness=plan.aggressiveness,
        diagnoses=result.labels,
        diagnosis_summary=result.summary,
        repaired_text=result.repaired_text,
        lock_report=lock_report.to_dict(),
    )
