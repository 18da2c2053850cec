from __future__ import annotations

import logging
from typing import Optional

from .executor import Executor, Report
from .plan import Plan
from .probe import Prober

logger = logging.getLogger(__name__)


def run_pipeline(
    *,
    plan: Plan,
    prober: Prober,
    executor: Executor,
    start_at: Optional[str] = None,
    stop_after: Optional[str] = None,
) -> Report:
    """Probe every selected item fresh, then apply only what is not yet satisfied."""

    selected = plan.window(start_at, stop_after)
    if len(selected) != len(plan):
        logger.info("Running %d of %d item(s) (%s .. %s)", len(selected), len(plan), start_at, stop_after)

    probes = prober.probe_plan(selected)
    unsatisfied = [i for i, p in probes.items() if not p.currently_satisfied]
    logger.info("Probed %d item(s); %d need changes", len(probes), len(unsatisfied))

    report = executor.apply(selected, probes)

    s = report.summary()
    logger.info(
        "Done: applied=%d skipped=%d failed=%d warned=%d pending=%d",
        s["applied"],
        s["skipped"],
        s["failed"],
        s["warned"],
        s["pending"],
    )
    for o in report.failed:
        logger.error("FAILED %s: %s", o.item_id, o.error)
    return report
