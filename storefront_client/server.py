"""
Storefront Client MCP Server.

Exposes the session and checkout layer over stdio: sign-up, login, logout,
startup session check, checkout with an external payment widget, and
resume of checkouts that are waiting for a delivery address.
"""
import asyncio
import json
import logging
import os
from datetime import datetime
from pathlib import Path

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import Tool, TextContent

from .checkout import CheckoutSaga, PaymentConfirmation
from .checkout.saga import TERMINAL_STATES
from .collectors import BrowserPaymentCollector, ManualPaymentCollector, PaymentCollector
from .context import StorefrontContext
from .errors import StorefrontError
from .events import CART_CLEAR_REQUESTED, SESSION_EXPIRED
from .output_sanitizer import redact_email, sanitize_output

logger = logging.getLogger(__name__)

# Debug log: records every tool call and response for session review
_DEBUG_LOG_DIR = Path(os.environ.get(
    "STOREFRONT_DEBUG_DIR",
    os.path.expanduser("~/.config/storefront-client/debug"),
))

_PAYMENT_COLLECTOR = os.environ.get("STOREFRONT_PAYMENT_COLLECTOR", "browser").lower()

# Arguments never written to the debug log
_SECRET_ARGS = {"password", "confirm_password", "confirmPassword", "signature"}


def _debug_log(tool_name: str, args: dict, result: str) -> None:
    """Append a tool call entry to the debug log file."""
    try:
        _DEBUG_LOG_DIR.mkdir(parents=True, exist_ok=True)
        log_file = _DEBUG_LOG_DIR / f"session_{datetime.now().strftime('%Y-%m-%d')}.log"
        timestamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]
        safe_args = {k: ("[REDACTED]" if k in _SECRET_ARGS else v) for k, v in args.items()}

        entry = (
            f"\n{'='*80}\n"
            f"[{timestamp}] TOOL: {tool_name}\n"
            f"ARGS: {json.dumps(safe_args, indent=2, default=str)}\n"
            f"RESPONSE:\n{result}\n"
        )

        with open(log_file, "a") as f:
            f.write(entry)
    except Exception as e:
        logger.debug("Debug log write failed: %s", e)


server = Server("storefront-client")

# Lazy-initialized singletons
_context: StorefrontContext | None = None
_collector: PaymentCollector | None = None

# Checkouts started in this process, keyed by provider order id.
# Finished ones are dropped oldest-first once there are more than this many.
_MAX_TRACKED_CHECKOUTS = 50
_checkouts: dict[str, CheckoutSaga] = {}

# Broadcast signals waiting to be shown with the next tool result
_notices: list[dict] = []


def _get_context() -> StorefrontContext:
    global _context
    if _context is None:
        _context = StorefrontContext.create()
        _context.events.subscribe(SESSION_EXPIRED, _on_session_expired)
        _context.events.subscribe(CART_CLEAR_REQUESTED, _on_cart_clear)
    return _context


def _get_collector() -> PaymentCollector:
    global _collector
    if _collector is None:
        if _PAYMENT_COLLECTOR == "manual":
            _collector = ManualPaymentCollector()
        else:
            _collector = BrowserPaymentCollector()
    return _collector


def _on_session_expired(message: str) -> None:
    _notices.append({"signal": SESSION_EXPIRED, "message": message})


def _on_cart_clear(order_id: str) -> None:
    _notices.append({
        "signal": CART_CLEAR_REQUESTED,
        "message": "Order placed; the cart should be cleared.",
        "order_id": order_id,
    })


def _remember_checkout(order_id: str, saga: CheckoutSaga) -> None:
    _checkouts[order_id] = saga
    excess = len(_checkouts) - _MAX_TRACKED_CHECKOUTS
    if excess <= 0:
        return
    finished = [key for key, tracked in _checkouts.items() if tracked.state in TERMINAL_STATES]
    for key in finished[:excess]:
        del _checkouts[key]
    logger.debug("Dropped %d finished checkout(s) from tracking", min(excess, len(finished)))


def _find_checkout(reference: str) -> CheckoutSaga | None:
    """Match on provider order id or server order reference."""
    saga = _checkouts.get(reference)
    if saga is not None:
        return saga
    for saga in _checkouts.values():
        if saga.reference == reference:
            return saga
    return None


# ---------------------------------------------------------------------------
# Tool definitions
# ---------------------------------------------------------------------------

_ADDRESS_SCHEMA = {
    "type": "object",
    "description": (
        "Delivery address (addressLine1, addressLine2, city, state, pincode, phone, "
        "altPhone, notes). addressLine1, city, pincode and phone are required."
    ),
}


@server.list_tools()
async def list_tools() -> list[Tool]:
    return [
        Tool(
            name="session_status",
            description="Show whether a user is signed in, the saved delivery location, and any unfinished checkouts.",
            inputSchema={"type": "object", "properties": {}, "required": []},
        ),
        Tool(
            name="signup",
            description="Create a storefront account and sign in.",
            inputSchema={
                "type": "object",
                "properties": {
                    "name": {"type": "string"},
                    "email": {"type": "string"},
                    "phone": {"type": "string"},
                    "password": {"type": "string"},
                    "confirm_password": {"type": "string", "description": "Must match password"},
                },
                "required": ["name", "email", "password", "confirm_password"],
            },
        ),
        Tool(
            name="login",
            description="Sign in to the storefront.",
            inputSchema={
                "type": "object",
                "properties": {
                    "email": {"type": "string"},
                    "password": {"type": "string"},
                },
                "required": ["email", "password"],
            },
        ),
        Tool(
            name="logout",
            description="Sign out. The local session is cleared even if the server cannot be reached.",
            inputSchema={"type": "object", "properties": {}, "required": []},
        ),
        Tool(
            name="check_auth",
            description="Re-check whether the stored session is still valid.",
            inputSchema={"type": "object", "properties": {}, "required": []},
        ),
        Tool(
            name="start_checkout",
            description=(
                "Start paying for a cart. Creates the order and opens the payment widget. "
                "Returns immediately; use checkout_status to follow the payment."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "cart": {
                        "type": "array",
                        "items": {"type": "object"},
                        "description": "Cart lines (productId, name, price, quantity)",
                    },
                    "total": {
                        "type": "string",
                        "description": "Order total in rupees, e.g. '499.00'",
                    },
                    "coupon": {
                        "type": "object",
                        "description": "Applied coupon (code, discountPercentage)",
                    },
                },
                "required": ["cart", "total"],
            },
        ),
        Tool(
            name="submit_payment",
            description="Hand over the payment widget's confirmation (payment_id, order_id, signature).",
            inputSchema={
                "type": "object",
                "properties": {
                    "payment_id": {"type": "string"},
                    "order_id": {"type": "string", "description": "Provider order id from start_checkout"},
                    "signature": {"type": "string"},
                },
                "required": ["payment_id", "order_id", "signature"],
            },
        ),
        Tool(
            name="checkout_status",
            description="Show where a checkout stands. Optionally wait a few seconds for the next step.",
            inputSchema={
                "type": "object",
                "properties": {
                    "reference": {"type": "string", "description": "Provider order id or order reference"},
                    "wait_seconds": {"type": "number", "default": 0},
                },
                "required": [],
            },
        ),
        Tool(
            name="resume_checkout",
            description=(
                "Resume a checkout that needs a delivery address. Without an address, only "
                "recovers and shows the pending payment; with one, finalizes the order."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "order_ref": {"type": "string"},
                    "address": _ADDRESS_SCHEMA,
                    "navigation_state": {
                        "type": "object",
                        "description": "State handed over by the checkout step (fromCheckout, pendingPayment)",
                    },
                },
                "required": ["order_ref"],
            },
        ),
        Tool(
            name="abandon_checkout",
            description="Give up on a checkout that is waiting for an address.",
            inputSchema={
                "type": "object",
                "properties": {"order_ref": {"type": "string"}},
                "required": ["order_ref"],
            },
        ),
        Tool(
            name="view_location",
            description="Show the saved delivery location.",
            inputSchema={
                "type": "object",
                "properties": {"compact": {"type": "boolean", "default": False}},
                "required": [],
            },
        ),
    ]


# ---------------------------------------------------------------------------
# Tool dispatch
# ---------------------------------------------------------------------------

@server.call_tool()
async def call_tool(name: str, arguments: dict) -> list[TextContent]:
    arguments = arguments or {}
    try:
        if name == "session_status":
            result = await _handle_session_status(arguments)
        elif name == "signup":
            result = await _handle_signup(arguments)
        elif name == "login":
            result = await _handle_login(arguments)
        elif name == "logout":
            result = await _handle_logout(arguments)
        elif name == "check_auth":
            result = await _handle_check_auth(arguments)
        elif name == "start_checkout":
            result = await _handle_start_checkout(arguments)
        elif name == "submit_payment":
            result = await _handle_submit_payment(arguments)
        elif name == "checkout_status":
            result = await _handle_checkout_status(arguments)
        elif name == "resume_checkout":
            result = await _handle_resume_checkout(arguments)
        elif name == "abandon_checkout":
            result = await _handle_abandon_checkout(arguments)
        elif name == "view_location":
            result = await _handle_view_location(arguments)
        else:
            return [TextContent(type="text", text=f"Unknown tool: {name}")]
    except StorefrontError as e:
        logger.info("Tool %s refused: %s", name, e.message)
        result = {"status": "error", "error": type(e).__name__, "message": e.message}
    except Exception as e:
        logger.exception("Tool %s failed", name)
        error_text = f"Error: {str(e)}"
        _debug_log(name, arguments, error_text)
        return [TextContent(type="text", text=error_text)]

    if isinstance(result, dict) and _notices:
        result["notices"] = list(_notices)
        _notices.clear()

    text = result if isinstance(result, str) else json.dumps(result, indent=2, default=str)
    sanitized = sanitize_output(text)

    _debug_log(name, arguments, sanitized)
    return [TextContent(type="text", text=sanitized)]


# ---------------------------------------------------------------------------
# Tool implementations
# ---------------------------------------------------------------------------

def _session_summary(ctx: StorefrontContext) -> dict:
    summary = ctx.session.snapshot()
    user = summary.get("user")
    if user and user.get("email"):
        user["email"] = redact_email(user["email"])
    return summary


async def _handle_session_status(args: dict) -> dict:
    ctx = _get_context()
    return {
        "status": "ok",
        "session": _session_summary(ctx),
        "location": ctx.locations.label(compact=True),
        "pending_checkouts": ctx.pending.references(),
    }


async def _handle_signup(args: dict) -> dict:
    ctx = _get_context()
    await ctx.session.sign_up(args)
    return {"status": "signed_in", "session": _session_summary(ctx)}


async def _handle_login(args: dict) -> dict:
    ctx = _get_context()
    await ctx.session.login(args)
    return {"status": "signed_in", "session": _session_summary(ctx)}


async def _handle_logout(args: dict) -> dict:
    ctx = _get_context()
    await ctx.session.logout()
    return {"status": "signed_out", "session": _session_summary(ctx)}


async def _handle_check_auth(args: dict) -> dict:
    ctx = _get_context()
    valid = await ctx.session.check_auth()
    return {"status": "ok" if valid else "signed_out", "session": _session_summary(ctx)}


async def _handle_start_checkout(args: dict) -> dict:
    """Create the order intent and open the payment widget."""
    ctx = _get_context()
    if not ctx.session.is_authenticated:
        return {"status": "error", "message": "Please login to proceed with payment"}

    principal = ctx.session.principal
    prefill = {"name": principal.name or "Customer", "email": principal.email, "contact": principal.phone}

    collector = _get_collector()
    saga = ctx.new_checkout(collector)
    intent = await saga.start(args.get("cart") or [], args.get("total"), args.get("coupon"), prefill=prefill)
    _remember_checkout(intent.provider_order_id, saga)

    if isinstance(collector, ManualPaymentCollector):
        next_step = "Complete the payment, then call submit_payment with payment_id, order_id and signature."
    else:
        next_step = "The payment window is open in the browser. Use checkout_status to follow the payment."
    return {
        "status": "awaiting_payment",
        "order_id": intent.provider_order_id,
        "order_ref": intent.order_ref,
        "amount": intent.amount,
        "currency": intent.currency,
        "next_step": next_step,
    }


async def _handle_submit_payment(args: dict) -> dict:
    """Deliver the widget's confirmation to the waiting checkout."""
    confirmation = PaymentConfirmation(
        payment_id=args["payment_id"],
        order_id=args["order_id"],
        signature=args["signature"],
    )
    saga = _find_checkout(confirmation.order_id)
    if saga is None:
        return {"status": "error", "message": f"No checkout is waiting on order {confirmation.order_id}"}

    collector = _get_collector()
    if isinstance(collector, ManualPaymentCollector) and collector.is_waiting(confirmation.order_id):
        await collector.deliver(confirmation)
    else:
        await saga.on_payment_confirmed(confirmation)
    return _checkout_result(saga)


async def _handle_checkout_status(args: dict) -> dict:
    reference = args.get("reference")
    if not reference:
        return {
            "status": "ok",
            "checkouts": {ref: saga.snapshot() for ref, saga in _checkouts.items()},
            "pending_checkouts": _get_context().pending.references(),
        }

    saga = _find_checkout(reference)
    if saga is None:
        return {"status": "error", "message": f"No checkout found for {reference}"}
    wait_seconds = float(args.get("wait_seconds") or 0)
    if wait_seconds > 0 and saga.outcome is None:
        await saga.wait(timeout=wait_seconds)
    return _checkout_result(saga)


def _checkout_result(saga: CheckoutSaga) -> dict:
    result = {"status": saga.state.value, "reference": saga.reference}
    if saga.outcome is not None:
        result["outcome"] = saga.outcome.to_dict()
    return result


async def _handle_resume_checkout(args: dict) -> dict:
    """Recover a pending checkout and, when an address is given, finalize it."""
    ctx = _get_context()
    step = ctx.address_step()
    order_ref = args["order_ref"]

    pending = await step.recover(order_ref, args.get("navigation_state"))
    address = args.get("address")
    if not address:
        return {
            "status": "awaiting_address",
            "order_ref": pending.order_ref,
            "items": len(pending.items),
            "total_amount": pending.total_amount,
            "resume_attempts": pending.resume_attempts,
            "saved_location": ctx.locations.label(),
        }

    outcome = await step.submit(pending.order_ref, address, saga=_find_checkout(pending.order_ref))
    return {"status": outcome.destination.value, "outcome": outcome.to_dict()}


async def _handle_abandon_checkout(args: dict) -> dict:
    ctx = _get_context()
    removed = ctx.address_step().abandon(args["order_ref"])
    if not removed:
        return {"status": "not_found", "message": f"No pending checkout for {args['order_ref']}"}
    return {"status": "abandoned", "order_ref": args["order_ref"]}


async def _handle_view_location(args: dict) -> dict:
    ctx = _get_context()
    location = ctx.locations.load()
    return {
        "status": "ok" if location else "no_location",
        "label": ctx.locations.label(compact=bool(args.get("compact"))),
        "location": location.to_payload() if location else None,
    }


# ---------------------------------------------------------------------------
# Server entry point
# ---------------------------------------------------------------------------

async def main():
    """Run the MCP server over stdio."""
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    logger.info("Storefront client MCP server starting...")

    ctx = _get_context()
    await ctx.session.check_auth()
    ctx.start_watching()

    try:
        async with stdio_server() as (read_stream, write_stream):
            await server.run(read_stream, write_stream, server.create_initialization_options())
    finally:
        if _collector:
            await _collector.close()
        await ctx.close()


def run():
    """Sync entry point for console_scripts."""
    asyncio.run(main())
