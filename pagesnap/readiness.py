"""Best-effort "page looks finished" heuristic run between navigation and capture."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from playwright.async_api import Page
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from pagesnap import metrics
from pagesnap.settings import ReadinessSettings, get_settings

LOGGER = logging.getLogger(__name__)

IMAGES_SCRIPT = """
(timeoutMs) => Promise.all(Array.from(document.images).map((img) => {
  if (img.complete) return true;
  return new Promise((resolve) => {
    const done = () => resolve(true);
    img.addEventListener('load', done, { once: true });
    img.addEventListener('error', done, { once: true });
    setTimeout(done, timeoutMs);
  });
})).then((settled) => settled.length)
"""

FONTS_SCRIPT = "() => document.fonts ? document.fonts.ready.then(() => true) : true"

MUTATION_SCRIPT = """
({ quietMs, ceilingMs }) => new Promise((resolve) => {
  const root = document.documentElement;
  if (!root) { resolve('empty'); return; }
  let quietTimer = null;
  let hardTimer = null;
  const observer = new MutationObserver(() => {
    clearTimeout(quietTimer);
    quietTimer = setTimeout(() => finish('quiet'), quietMs);
  });
  const finish = (reason) => {
    observer.disconnect();
    clearTimeout(quietTimer);
    clearTimeout(hardTimer);
    resolve(reason);
  };
  observer.observe(root, { childList: true, subtree: true, attributes: true, characterData: true });
  quietTimer = setTimeout(() => finish('quiet'), quietMs);
  hardTimer = setTimeout(() => finish('ceiling'), ceilingMs);
})
"""

FRAMEWORKS_SCRIPT = """
() => {
  const found = [];
  if (window.__NEXT_DATA__ || document.getElementById('__next')) found.push('next');
  if (window.__NUXT__ || document.getElementById('__nuxt')) found.push('nuxt');
  if (window.React || window.__REACT_DEVTOOLS_GLOBAL_HOOK__ || document.querySelector('[data-reactroot]')) found.push('react');
  if (window.Vue || window.__VUE__ || document.querySelector('[data-v-app]')) found.push('vue');
  if (window.ng || window.getAllAngularRootElements || document.querySelector('[ng-version]')) found.push('angular');
  if (document.querySelector('[class*="svelte-"]')) found.push('svelte');
  return found;
}
"""

# In-page scripts resolve themselves at their own ceiling; allow for the round trip.
_SCRIPT_SLACK_MS = 250


@dataclass(slots=True)
class ReadinessStep:
    name: str
    outcome: str
    elapsed_ms: int


@dataclass(slots=True)
class ReadinessReport:
    """What the heuristic waited for and how each step ended."""

    budget_ms: int
    steps: list[ReadinessStep] = field(default_factory=list)
    frameworks: list[str] = field(default_factory=list)
    extra_delay_ms: int = 0
    degraded: bool = False
    elapsed_ms: int = 0

    def outcome(self, name: str) -> str | None:
        for step in self.steps:
            if step.name == name:
                return step.outcome
        return None


class _Budget:
    def __init__(self, budget_ms: int) -> None:
        self._deadline = time.monotonic() + budget_ms / 1000

    def remaining_ms(self) -> int:
        return max(0, int((self._deadline - time.monotonic()) * 1000))


async def wait_until_visually_ready(
    page: Page,
    *,
    timeout_ms: int,
    remaining_ms: int | None = None,
    readiness_settings: ReadinessSettings | None = None,
) -> ReadinessReport:
    """Wait for network, images, fonts, DOM quiescence and framework hydration.

    The whole sequence shares one budget of ``timeout_ms * budget_ratio``,
    clipped to ``remaining_ms`` when the caller has already spent part of the
    job timeout. A step that reaches its ceiling is recorded as ``timeout`` and
    the sequence continues. Any other failure switches to a flat wait and is
    reported through ``degraded``; this function never raises for page errors.
    """

    cfg = readiness_settings or get_settings().readiness
    budget_ms = int(timeout_ms * cfg.budget_ratio)
    if remaining_ms is not None:
        budget_ms = min(budget_ms, max(0, remaining_ms))
    budget = _Budget(budget_ms)
    report = ReadinessReport(budget_ms=budget_ms)
    started = time.perf_counter()

    try:
        await _bounded(
            report,
            budget,
            "network_idle",
            lambda limit: page.wait_for_load_state("networkidle", timeout=limit),
            cfg.network_idle_ms,
        )
        await _bounded(
            report,
            budget,
            "images",
            lambda _limit: page.evaluate(IMAGES_SCRIPT, cfg.image_timeout_ms),
            cfg.image_timeout_ms + _SCRIPT_SLACK_MS,
        )
        await _bounded(
            report,
            budget,
            "fonts",
            lambda _limit: page.evaluate(FONTS_SCRIPT),
            cfg.font_timeout_ms,
        )
        await _bounded(
            report,
            budget,
            "dom_quiet",
            lambda _limit: page.evaluate(
                MUTATION_SCRIPT,
                {"quietMs": cfg.quiet_window_ms, "ceilingMs": cfg.mutation_ceiling_ms},
            ),
            cfg.mutation_ceiling_ms + _SCRIPT_SLACK_MS,
        )
        await _framework_delay(page, report, budget, cfg)
    except Exception as exc:  # noqa: BLE001 - heuristic failures never escalate
        report.degraded = True
        metrics.record_readiness_degraded()
        fallback_ms = min(cfg.fallback_wait_ms, budget.remaining_ms())
        LOGGER.warning("Readiness heuristic failed (%s); falling back to a %dms wait", exc, fallback_ms)
        if fallback_ms:
            await asyncio.sleep(fallback_ms / 1000)

    report.elapsed_ms = int((time.perf_counter() - started) * 1000)
    LOGGER.debug(
        "Readiness finished in %dms (budget=%dms, frameworks=%s, degraded=%s)",
        report.elapsed_ms,
        budget_ms,
        report.frameworks,
        report.degraded,
    )
    return report


async def _bounded(
    report: ReadinessReport,
    budget: _Budget,
    name: str,
    step: Callable[[int], Awaitable[Any]],
    ceiling_ms: int,
) -> None:
    limit_ms = min(ceiling_ms, budget.remaining_ms())
    if limit_ms <= 0:
        report.steps.append(ReadinessStep(name=name, outcome="skipped", elapsed_ms=0))
        return
    started = time.perf_counter()
    try:
        await asyncio.wait_for(step(limit_ms), timeout=limit_ms / 1000)
        outcome = "ok"
    except (asyncio.TimeoutError, PlaywrightTimeoutError):
        outcome = "timeout"
    elapsed = int((time.perf_counter() - started) * 1000)
    report.steps.append(ReadinessStep(name=name, outcome=outcome, elapsed_ms=elapsed))
    if outcome == "timeout":
        LOGGER.debug("Readiness step %s hit its %dms ceiling", name, limit_ms)


async def _framework_delay(
    page: Page,
    report: ReadinessReport,
    budget: _Budget,
    cfg: ReadinessSettings,
) -> None:
    if budget.remaining_ms() <= 0:
        report.steps.append(ReadinessStep(name="frameworks", outcome="skipped", elapsed_ms=0))
        return
    try:
        detected = await asyncio.wait_for(
            page.evaluate(FRAMEWORKS_SCRIPT),
            timeout=budget.remaining_ms() / 1000,
        )
    except asyncio.TimeoutError:
        report.steps.append(ReadinessStep(name="frameworks", outcome="timeout", elapsed_ms=0))
        return
    report.frameworks = [name for name in detected or [] if isinstance(name, str)]
    delays = [cfg.framework_delays.get(name, 0) for name in report.frameworks]
    delay_ms = min(max(delays, default=0), budget.remaining_ms())
    report.extra_delay_ms = delay_ms
    if delay_ms:
        await asyncio.sleep(delay_ms / 1000)
    report.steps.append(ReadinessStep(name="frameworks", outcome="ok", elapsed_ms=delay_ms))
