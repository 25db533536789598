# site_lens/browser/prepare.py
"""
Page settling before rule evaluation: network idle, a progressive scroll
that triggers lazy content, then forcing lazy attributes and waiting for
images and fonts. Every step is best-effort; failures only reduce how much
content the later stages see.
"""
from __future__ import annotations

import logging

from site_lens.browser.page import RenderablePage
from site_lens.budget import with_deadline

__all__ = ("prepare_page", "SCROLL_SCRIPT", "ASSET_SCRIPT")

logger = logging.getLogger("SiteLens")

LOAD_STATE_CAP_MS = 5000
SCROLL_TIMEOUT_CAP_MS = 6000
ASSET_WAIT_CAP_MS = 7000
SCROLL_STEP_PX = 900
SCROLL_SETTLE_MS = 180
MAX_SCROLL_STEPS = 50

SCROLL_SCRIPT = """
async ({ stepPx, settleMs, maxSteps }) => {
  const wait = (ms) => new Promise((resolve) => setTimeout(resolve, ms));
  const documentHeight = () => Math.max(
    document.documentElement ? document.documentElement.scrollHeight : 0,
    document.body ? document.body.scrollHeight : 0
  );
  const maxScrollY = () => Math.max(0, documentHeight() - window.innerHeight);
  for (let pass = 0; pass < 2; pass += 1) {
    let steps = 0;
    let y = 0;
    while (y < maxScrollY() && steps < maxSteps) {
      window.scrollTo(0, y);
      await wait(settleMs);
      y += stepPx;
      steps += 1;
    }
    window.scrollTo(0, maxScrollY());
    await wait(Math.max(settleMs, 260));
  }
  window.scrollTo(0, 0);
}
"""

ASSET_SCRIPT = """
async () => {
  const wait = (ms) => new Promise((resolve) => setTimeout(resolve, ms));
  const mapAttribute = (el, attr, dataAttr) => {
    if (!el.hasAttribute(attr) && el.hasAttribute(dataAttr)) {
      el.setAttribute(attr, el.getAttribute(dataAttr) || '');
    }
  };
  document.querySelectorAll('img, source, iframe, video').forEach((el) => {
    if (el.hasAttribute('loading')) el.setAttribute('loading', 'eager');
    mapAttribute(el, 'src', 'data-src');
    mapAttribute(el, 'srcset', 'data-srcset');
    mapAttribute(el, 'poster', 'data-poster');
  });
  await Promise.all(Array.from(document.images).map(async (img) => {
    try {
      if (!img.complete) {
        await Promise.race([
          new Promise((resolve) => img.addEventListener('load', resolve, { once: true })),
          new Promise((resolve) => img.addEventListener('error', resolve, { once: true })),
          wait(1800)
        ]);
      }
      if (typeof img.decode === 'function') await img.decode().catch(() => {});
    } catch (e) {}
  }));
  if (document.fonts && document.fonts.ready) await document.fonts.ready.catch(() => {});
  await wait(160);
}
"""


async def prepare_page(page: RenderablePage, available_ms: int) -> None:
    """Settle ``page`` within roughly ``available_ms``; never raises for step failures."""
    load_timeout = max(900, min(LOAD_STATE_CAP_MS, max(900, available_ms - 250)))
    try:
        await page.wait_for_network_idle(load_timeout)
    except Exception as exc:  # noqa: BLE001
        logger.debug("network idle not reached: %s", exc)

    scroll_timeout = max(1200, min(SCROLL_TIMEOUT_CAP_MS, max(1200, available_ms - 250)))
    try:
        await with_deadline(
            page.evaluate(
                SCROLL_SCRIPT,
                {"stepPx": SCROLL_STEP_PX, "settleMs": SCROLL_SETTLE_MS, "maxSteps": MAX_SCROLL_STEPS},
            ),
            scroll_timeout,
            "page scroll",
        )
    except Exception as exc:  # noqa: BLE001
        logger.debug("scroll pass skipped: %s", exc)

    asset_timeout = max(1400, min(ASSET_WAIT_CAP_MS, max(1400, available_ms - 200)))
    try:
        await with_deadline(page.evaluate(ASSET_SCRIPT), asset_timeout, "asset readiness")
    except Exception as exc:  # noqa: BLE001
        logger.debug("asset wait skipped: %s", exc)

    try:
        await page.wait_for_network_idle(min(2000, load_timeout))
    except Exception as exc:  # noqa: BLE001
        logger.debug("final network idle not reached: %s", exc)
