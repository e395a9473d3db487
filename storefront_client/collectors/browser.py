"""
Browser-hosted payment widget.

Renders a minimal page in a Playwright browser that loads the provider's
checkout script and opens the widget for one order intent. The widget's
completion handler and dismissal hook call back into Python through
exposed functions; each page reports at most one outcome.
"""
import asyncio
import html
import json
import logging
import os
from typing import Optional

from playwright.async_api import async_playwright, Browser, BrowserContext, Page, Playwright

from ..checkout.schema import OrderIntent, PaymentConfirmation
from .base import ConfirmedCallback, DismissedCallback, PaymentCollector

logger = logging.getLogger(__name__)

CHECKOUT_SCRIPT_URL = os.environ.get(
    "STOREFRONT_CHECKOUT_SCRIPT", "https://checkout.razorpay.com/v1/checkout.js",
)
STORE_NAME = os.environ.get("STOREFRONT_STORE_NAME", "Storefront")

COMPLETE_BINDING = "storefrontPaymentComplete"
DISMISSED_BINDING = "storefrontPaymentDismissed"


def render_checkout_page(intent: OrderIntent, prefill: dict | None = None, store_name: str = STORE_NAME) -> str:
    """HTML page that opens the widget as soon as the provider script has loaded."""
    options = {
        "key": intent.provider_key,
        "amount": intent.amount,
        "currency": intent.currency,
        "name": store_name,
        "description": "Order payment",
        "order_id": intent.provider_order_id,
        "prefill": prefill or {},
    }
    # </ inside a JSON string would close the script element
    options_json = json.dumps(options).replace("</", "<\\/")
    return f"""<!doctype html>
<html>
<head><meta charset="utf-8"><title>{html.escape(store_name)} checkout</title></head>
<body>
<script src="{html.escape(CHECKOUT_SCRIPT_URL)}"></script>
<script>
  const options = {options_json};
  options.handler = function (response) {{ window.{COMPLETE_BINDING}(response); }};
  options.modal = {{ ondismiss: function () {{ window.{DISMISSED_BINDING}(); }} }};
  new window.Razorpay(options).open();
</script>
</body>
</html>
"""


def confirmation_from_widget(response: dict, intent: OrderIntent) -> PaymentConfirmation:
    """The widget reports razorpay_* fields; the provider order id falls back to the intent's."""
    return PaymentConfirmation(
        payment_id=response.get("razorpay_payment_id") or response.get("payment_id") or "",
        order_id=response.get("razorpay_order_id") or response.get("order_id") or intent.provider_order_id,
        signature=response.get("razorpay_signature") or response.get("signature") or "",
    )


class BrowserPaymentCollector(PaymentCollector):
    """One Playwright browser shared by every checkout; one page per order intent."""

    def __init__(self, store_name: str = STORE_NAME):
        self._store_name = store_name
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._pages: dict[str, Page] = {}
        self._tasks: set[asyncio.Task] = set()

    @property
    def headless(self) -> bool:
        return os.environ.get("STOREFRONT_HEADLESS", "false").lower() == "true"

    async def _ensure_browser(self) -> Browser:
        """Launch browser if not already running."""
        if self._browser and self._browser.is_connected():
            return self._browser

        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(
            headless=self.headless,
            args=["--disable-dev-shm-usage", "--no-sandbox"],
        )
        logger.info("Browser launched (headless=%s)", self.headless)
        return self._browser

    async def _ensure_context(self) -> BrowserContext:
        if self._context:
            return self._context
        browser = await self._ensure_browser()
        self._context = await browser.new_context(viewport={"width": 1280, "height": 900})
        return self._context

    async def open(
        self,
        intent: OrderIntent,
        on_confirmed: ConfirmedCallback,
        on_dismissed: DismissedCallback | None = None,
        prefill: dict | None = None,
    ) -> None:
        context = await self._ensure_context()
        page = await context.new_page()
        complete, dismissed = self._make_bindings(intent, on_confirmed, on_dismissed)
        await page.expose_function(COMPLETE_BINDING, complete)
        await page.expose_function(DISMISSED_BINDING, dismissed)
        await page.set_content(
            render_checkout_page(intent, prefill, self._store_name),
            wait_until="domcontentloaded",
            timeout=30000,
        )
        self._pages[intent.provider_order_id] = page
        logger.info("Payment widget opened for provider order %s", intent.provider_order_id)

    def _make_bindings(
        self,
        intent: OrderIntent,
        on_confirmed: ConfirmedCallback,
        on_dismissed: DismissedCallback | None,
    ):
        """Page callbacks. Whichever fires first wins; later calls are ignored."""
        fired = False

        def complete(response: dict) -> None:
            nonlocal fired
            if fired:
                logger.warning("Ignoring repeated widget callback for %s", intent.provider_order_id)
                return
            fired = True
            confirmation = confirmation_from_widget(response or {}, intent)
            self._spawn(on_confirmed(confirmation))
            self._spawn(self._close_page(intent.provider_order_id))

        def dismissed() -> None:
            nonlocal fired
            if fired:
                return
            fired = True
            if on_dismissed is not None:
                self._spawn(on_dismissed())
            self._spawn(self._close_page(intent.provider_order_id))

        return complete, dismissed

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Payment callback failed: %s", task.exception())

    async def _close_page(self, order_id: str) -> None:
        page = self._pages.pop(order_id, None)
        if page is None:
            return
        try:
            await page.close()
        except Exception as e:
            logger.debug("Closing payment page failed: %s", e)

    async def close(self) -> None:
        """Close every widget page and shut the browser down."""
        for order_id in list(self._pages):
            await self._close_page(order_id)

        if self._context:
            try:
                await self._context.close()
            except Exception as e:
                logger.debug("Closing browser context failed: %s", e)
            self._context = None

        if self._browser:
            try:
                await self._browser.close()
            except Exception as e:
                logger.debug("Closing browser failed: %s", e)
            self._browser = None

        if self._playwright:
            try:
                await self._playwright.stop()
            except Exception as e:
                logger.debug("Stopping Playwright failed: %s", e)
            self._playwright = None

        logger.info("Payment browser closed")
