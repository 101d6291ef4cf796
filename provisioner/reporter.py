"""Human-readable run summary.

render_report() is a pure function of its inputs; the CLI prints the
text it returns.
"""

from typing import List, Optional

from .models import RunReport, OutcomeStatus, Endpoint

RULE = "=" * 49

_STATUS_MARKS = {
    OutcomeStatus.SKIPPED: "-",
    OutcomeStatus.SUCCEEDED: "✓",
    OutcomeStatus.SUCCEEDED_WITH_WARNING: "!",
    OutcomeStatus.FAILED: "✗",
    OutcomeStatus.PLANNED: "?",
}


def _indent(text: str, prefix: str = "    ") -> List[str]:
    return [prefix + line for line in text.strip().splitlines()]


def render_steps(report: RunReport) -> List[str]:
    lines = ["Steps:"]
    for outcome in report.outcomes:
        mark = _STATUS_MARKS[outcome.status]
        line = f"  {mark} {outcome.step}: {outcome.status.value}"
        if outcome.status in (OutcomeStatus.FAILED, OutcomeStatus.SUCCEEDED_WITH_WARNING) and outcome.reason:
            line += f" - {outcome.reason}"
        if outcome.attempts > 1:
            line += f" ({outcome.attempts} attempts)"
        lines.append(line)
    return lines


def render_report(
    report: RunReport,
    endpoint: Optional[Endpoint] = None,
    service_name: str = "vllm",
    log_file: Optional[str] = None,
) -> str:
    """Render the end-of-run summary.

    Args:
        report: Result of the run
        endpoint: Discovered endpoint addresses (completed runs only)
        service_name: systemd unit whose logs the user should look at
        log_file: Provisioner log file, if one was written

    Returns:
        Multi-line summary text
    """
    lines = [RULE]
    title = "Dry run" if report.dry_run else "Provisioning"
    lines.append(f"{title} {report.status.value.lower()} (run {report.run_id}, {report.elapsed:.1f}s)")
    lines.append("")
    lines.extend(render_steps(report))

    warnings = [o for o in report.outcomes
                if o.status is OutcomeStatus.SUCCEEDED_WITH_WARNING or (o.failed and o.step != report.aborted_at)]
    if warnings:
        lines.append("")
        lines.append("Warnings:")
        for outcome in warnings:
            lines.append(f"  {outcome.step}: {outcome.reason}")
            if outcome.hint:
                lines.append(f"    hint: {outcome.hint}")

    if report.completed:
        if report.dry_run:
            planned = [o.step for o in report.outcomes if o.status is OutcomeStatus.PLANNED]
            lines.append("")
            lines.append(f"{len(planned)} step(s) would run: {', '.join(planned) or 'none'}")
        elif endpoint is not None:
            lines.append("")
            lines.append("vLLM is now accessible at:")
            for url in endpoint.urls:
                lines.append(f"  - {url}")
            lines.append("")
            lines.append("To test the endpoint:")
            lines.append(f"  curl {endpoint.urls[0]}/v1/models")
            lines.append("")
            lines.append("To view Tailscale status:")
            lines.append("  tailscale status")
    else:
        failed = report.get_failed_step()
        lines.append("")
        lines.append(f"Aborted at: {report.aborted_at or 'before the first step'}")
        if report.reason:
            lines.append(f"Reason: {report.reason}")
        if failed is not None and failed.step == report.aborted_at:
            if failed.output:
                lines.append("Last output:")
                lines.extend(_indent(failed.output))
            if failed.hint:
                lines.append(f"Hint: {failed.hint}")

    lines.append("")
    lines.append(f"To view {service_name} logs:")
    lines.append(f"  journalctl -u {service_name} -f")
    if log_file:
        lines.append("Provisioner log:")
        lines.append(f"  {log_file}")
    lines.append(RULE)
    return "\n".join(lines)
