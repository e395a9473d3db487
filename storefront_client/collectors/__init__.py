"""Payment collectors: where the external payment widget lives."""
from .base import PaymentCollector
from .browser import BrowserPaymentCollector, render_checkout_page
from .manual import ManualPaymentCollector

__all__ = ["BrowserPaymentCollector", "ManualPaymentCollector", "PaymentCollector", "render_checkout_page"]
