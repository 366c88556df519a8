# wacommerce/bot/dispatcher.py

import re
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from loguru import logger

from wacommerce.bot import messages as msg
from wacommerce.bot.admin import AdminCommands
from wacommerce.bot.commerce import CommerceAPIClient
from wacommerce.bot.events import EventEmitter
from wacommerce.bot.intents import (
    INTENT_BROWSE,
    INTENT_CHECKOUT,
    INTENT_GREET,
    INTENT_HELP,
    INTENT_ORDER,
    INTENT_STATUS,
)
from wacommerce.bot.parser import CommandParser
from wacommerce.bot.session import SessionCache
from wacommerce.core.logging_config import new_trace_id, trace_id_var
from wacommerce.models.bot import BotMessage

CommandHandler = Callable[[str, List[str], str], Awaitable[List[BotMessage]]]
IntentHandler = Callable[[str, str, str], Awaitable[List[BotMessage]]]

MERCHANT_ROLES = ("merchant", "super_admin")
ADMIN_ROLES = ("super_admin",)

# First "<N> x " / "<N> " found applies to every product matched in the turn
QUANTITY_REGEX = re.compile(r"(\d+)\s*x?\s+")
NUMERIC_REPLY_REGEX = re.compile(r"\d{1,3}")

LIST_STEPS = ("menu", "search")

GREETING_TEXT = "Hello! 👋 Welcome! Type !menu to see our products or !help for commands."
STATUS_PROMPT_TEXT = "Please provide your order ID to check status. Type: !status <order-id>"
ACCESS_DENIED_TEXT = "Access denied. Merchant access required."
ADMIN_DENIED_TEXT = "Access denied. Admin privileges required."
EMPTY_CART_TEXT = "Your cart is empty. Type !menu to add items."


def _iter_catalog(products: Any) -> Iterable[Dict[str, Any]]:
    """Products come grouped by category; a flat list is accepted too."""
    if isinstance(products, dict):
        for items in products.values():
            yield from items or []
    elif isinstance(products, list):
        yield from products


def _format_date(value: Any) -> str:
    if not value:
        return "-"
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).strftime("%Y-%m-%d")
    except ValueError:
        return str(value)


def find_product_matches(message: str, products: Any) -> List[Dict[str, Any]]:
    """
    Products whose name has at least one lowercase word contained in the
    lowercased message. All matches share one quantity.
    """
    message_lower = message.lower()
    quantity_match = QUANTITY_REGEX.search(message_lower)
    quantity = int(quantity_match.group(1)) if quantity_match else 1
    if quantity <= 0:
        quantity = 1

    matches = []
    for product in _iter_catalog(products):
        words = str(product.get("name", "")).lower().split()
        if any(word in message_lower for word in words):
            matches.append({"id": product.get("id"), "name": product.get("name"), "quantity": quantity})
    return matches


class BotDispatcher:
    """
    Conversation engine: turns one inbound chat line into zero or more bot
    messages. All persistent effects (catalog, cart, orders) go through the
    commerce API; the dispatcher only keeps the session cache.
    """

    def __init__(
        self,
        api: CommerceAPIClient,
        parser: Optional[CommandParser] = None,
        sessions: Optional[SessionCache] = None,
        events: Optional[EventEmitter] = None,
    ):
        self.api = api
        self.parser = parser or CommandParser()
        self.sessions = sessions or SessionCache()
        self.events = events
        self.admin = AdminCommands(api, events)

        self.commands: Dict[str, CommandHandler] = {
            "register": self.cmd_register,
            "menu": self.cmd_menu,
            "m": self.cmd_menu,
            "search": self.cmd_search,
            "cart": self.cmd_cart,
            "c": self.cmd_cart,
            "add": self.cmd_add,
            "remove": self.cmd_remove,
            "clear": self.cmd_clear,
            "checkout": self.cmd_checkout,
            "pay": self.cmd_checkout,
            "orders": self.cmd_orders,
            "status": self.cmd_status,
            "track": self.cmd_status,
            "dashboard": self.cmd_dashboard,
            "help": self.cmd_help,
            "admin": self.cmd_admin,
        }
        self.intents: Dict[str, IntentHandler] = {
            INTENT_ORDER: self.intent_order,
            INTENT_BROWSE: self.intent_browse,
            INTENT_CHECKOUT: self.intent_checkout,
            INTENT_STATUS: self.intent_status,
            INTENT_GREET: self.intent_greet,
            INTENT_HELP: self.intent_help,
        }

    async def handle_message(self, phone: str, message: str, merchant_id: str) -> List[BotMessage]:
        """Runs one conversation turn. Never raises."""
        trimmed = (message or "").strip()
        if not trimmed:
            return []

        # Keep the request trace id when called from the HTTP surface
        current = trace_id_var.get()
        token = trace_id_var.set(current if current != "unset" else new_trace_id("turn"))
        log = logger.bind(trace_id=trace_id_var.get(), service="BotDispatcher", merchant_id=merchant_id)
        try:
            if self.events:
                self.events.message_received(phone, trimmed)

            reply = await self._resolve_numeric_reply(phone, trimmed, merchant_id)
            if reply is not None:
                return reply

            if self.parser.is_command(trimmed):
                parsed = self.parser.parse_command(trimmed)
                if parsed is None:
                    return [msg.text("Type !help for available commands.")]
                return await self.dispatch_command(phone, parsed.command, parsed.args, merchant_id)

            if not self.parser.is_valid_natural_language(trimmed):
                log.debug("Message ignored: no command and no intent")
                return []
            intent = self.parser.detect_intent(trimmed)
            log.info(f"Natural language intent: {intent}")
            return await self.intents[intent](phone, trimmed, merchant_id)
        except Exception as e:
            log.exception("Unhandled error during conversation turn")
            if self.events:
                self.events.error_occurred("bot.handle_message", e)
            return [msg.text(msg.GENERIC_ERROR_TEXT)]
        finally:
            trace_id_var.reset(token)

    async def dispatch_command(self, phone: str, command: str, args: List[str], merchant_id: str) -> List[BotMessage]:
        log = logger.bind(trace_id=trace_id_var.get(), service="BotDispatcher", command=command)
        handler = self.commands.get(command)
        if handler is None:
            log.info("Unknown command")
            if self.events:
                self.events.command_executed(phone, command, args, status="unknown")
            return [msg.text(f"Unknown command: {command}. Type !help for available commands.")]

        log.info(f"Executing command with {len(args)} arg(s)")
        replies = await handler(phone, args, merchant_id)
        if self.events:
            self.events.command_executed(phone, command, args)
        return replies

    async def _user_role(self, phone: str) -> Optional[str]:
        response = await self.api.verify_user(phone)
        if not response.get("success"):
            return None
        return (response.get("user") or {}).get("role")

    # --- Numbered list replies ---

    async def _resolve_numeric_reply(self, phone: str, message: str, merchant_id: str) -> Optional[List[BotMessage]]:
        if not NUMERIC_REPLY_REGEX.fullmatch(message):
            return None
        state = self.sessions.get(phone)
        if state is None or state.step not in LIST_STEPS or state.merchant_id != merchant_id:
            return None

        products = state.context.get("products") or []
        index = int(message)
        if not 1 <= index <= len(products):
            return [msg.text(f"Please reply with a number between 1 and {len(products)}.")]

        product = products[index - 1]
        return await self._add_product(phone, merchant_id, product, 1)

    def _remember_list(self, phone: str, step: str, merchant_id: str, products: List[Dict[str, Any]]) -> None:
        listed = [{"id": p.get("id"), "name": p.get("name")} for p in products]
        self.sessions.set(phone, step, {"products": listed}, merchant_id=merchant_id)

    async def _add_product(self, phone: str, merchant_id: str, product: Dict[str, Any], quantity: int) -> List[BotMessage]:
        result = await self.api.add_to_cart(phone, merchant_id, product.get("id"), quantity)
        if not result.get("success"):
            return [msg.text("Failed to add item to cart. Please try again.")]
        return [msg.text(
            f"✅ Added {quantity}x {product.get('name')} to cart! ({result.get('items_count', quantity)} total items)\n"
            "Type !cart to view or !checkout to order."
        )]

    # --- Customer commands ---

    async def cmd_register(self, phone: str, args: List[str], merchant_id: str) -> List[BotMessage]:
        name = " ".join(args) or "Customer"
        result = await self.api.register_user(phone, name)
        if not result.get("success"):
            return [msg.text(f"Registration failed: {result.get('error', 'please try again')}.")]
        return [msg.text(f"✅ Welcome, {name}! You are registered.\nType !menu to browse products.")]

    async def cmd_menu(self, phone: str, args: List[str], merchant_id: str) -> List[BotMessage]:
        result = await self.api.list_products(merchant_id)
        catalog = result.get("products") if result.get("success") else None
        if not catalog:
            return [msg.text("Could not load menu. Please try again.")]

        lines = ["🛍️ *MENU*", ""]
        listed: List[Dict[str, Any]] = []
        groups = catalog.items() if isinstance(catalog, dict) else [("", catalog)]
        for category, products in groups:
            if category:
                lines.append(f"*{category}*")
            for product in products or []:
                listed.append(product)
                lines.append(f"{len(listed)}. {product.get('name')} - {msg.money(product.get('currency', ''), product.get('price', 0))}")
            lines.append("")

        if not listed:
            return [msg.text("No products available right now.")]
        lines.append('Reply with a number, type !add [product] [qty] or just say "I want..."')
        self._remember_list(phone, "menu", merchant_id, listed)
        return [msg.text("\n".join(lines))]

    async def cmd_search(self, phone: str, args: List[str], merchant_id: str) -> List[BotMessage]:
        query = " ".join(args)
        if not query:
            return [msg.text("What would you like to search for? Type: !search <query>")]

        result = await self.api.search_products(query, merchant_id)
        products = result.get("results") or []
        if not result.get("success") or not products:
            return [msg.text(f'No products found for "{query}".')]

        lines = [f'🔍 Results for "{query}":', ""]
        for i, product in enumerate(products, start=1):
            lines.append(f"{i}. {product.get('name')} - {msg.money(product.get('currency', ''), product.get('price', 0))}")
        lines.append("")
        lines.append("Reply with a number to add it to your cart.")
        self._remember_list(phone, "search", merchant_id, products)
        return [msg.text("\n".join(lines))]

    async def cmd_cart(self, phone: str, args: List[str], merchant_id: str) -> List[BotMessage]:
        result = await self.api.get_cart(phone, merchant_id)
        cart = result.get("cart") if result.get("success") else None
        if not cart or not cart.get("items"):
            return [msg.text(EMPTY_CART_TEXT)]

        lines = ["🛒 *Your Cart*", ""]
        for item in cart["items"]:
            subtotal = item.get("subtotal", (item.get("price") or 0) * (item.get("quantity") or 0))
            lines.append(f"{item.get('quantity')}x {item.get('product_name')} - {msg.money(item.get('currency', cart.get('currency', '')), subtotal)}")
        lines.append("")
        lines.append(f"*Total: {msg.money(cart.get('currency', ''), cart.get('total', 0))}*")
        lines.append("Type !checkout to place your order.")
        return [msg.text("\n".join(lines))]

    async def cmd_add(self, phone: str, args: List[str], merchant_id: str) -> List[BotMessage]:
        if not args:
            return [msg.text("Usage: !add [product name] [quantity]")]

        quantity = 1
        query_args = args
        if len(args) > 1 and args[-1].isdigit() and int(args[-1]) > 0:
            quantity = int(args[-1])
            query_args = args[:-1]
        query = " ".join(query_args)

        result = await self.api.search_products(query, merchant_id)
        products = result.get("results") or []
        if not result.get("success") or not products:
            return [msg.text(f'Product "{query}" not found. Type !menu to browse.')]
        return await self._add_product(phone, merchant_id, products[0], quantity)

    async def cmd_remove(self, phone: str, args: List[str], merchant_id: str) -> List[BotMessage]:
        query = " ".join(args)
        if not query:
            return [msg.text("Usage: !remove [product name]")]

        result = await self.api.search_products(query, merchant_id)
        products = result.get("results") or []
        if not result.get("success") or not products:
            return [msg.text(f'Product "{query}" not found.')]

        removed = await self.api.remove_from_cart(phone, merchant_id, products[0].get("id"))
        if not removed.get("success"):
            return [msg.text("Failed to remove item. Please try again.")]
        return [msg.text(f"✅ Removed {products[0].get('name')} from your cart.")]

    async def cmd_clear(self, phone: str, args: List[str], merchant_id: str) -> List[BotMessage]:
        result = await self.api.clear_cart(phone, merchant_id)
        if not result.get("success"):
            return [msg.text("Failed to clear cart. Please try again.")]
        return [msg.text("🗑️ Cart cleared. Type !menu to start again.")]

    async def cmd_checkout(self, phone: str, args: List[str], merchant_id: str) -> List[BotMessage]:
        log = logger.bind(trace_id=trace_id_var.get(), service="BotDispatcher", merchant_id=merchant_id)

        cart_result = await self.api.get_cart(phone, merchant_id)
        cart = cart_result.get("cart") if cart_result.get("success") else None
        if not cart or not cart.get("items"):
            return [msg.text(EMPTY_CART_TEXT)]

        # Cart prices are authoritative; no re-pricing here
        items = [
            {"product_id": item.get("product_id"), "quantity": item.get("quantity"), "price": item.get("price")}
            for item in cart["items"]
        ]
        total = cart.get("total", 0)
        currency = cart.get("currency", "")

        order = await self.api.create_order(merchant_id, phone, items, total, currency, status="pending")
        if not order.get("success"):
            log.warning(f"Order creation failed, cart kept: {order.get('error')}")
            return [msg.text("Failed to place order. Please try again.")]

        order_id = order.get("order_id")
        log.success(f"Order {order_id} created")
        cleared = await self.api.clear_cart(phone, merchant_id)
        if not cleared.get("success"):
            log.warning(f"Order {order_id} created but cart clear failed: {cleared.get('error')}")

        if self.events:
            self.events.order_created({
                "id": order_id, "merchant_id": merchant_id, "customer_phone": phone,
                "items": items, "total_amount": total, "currency": currency, "status": "pending",
            })
        return [msg.text(
            f"✅ Order placed successfully!\nOrder ID: {order_id}\nTotal: {msg.money(currency, total)}\n\n"
            f"You will receive payment details shortly. Type !status {order_id} to track."
        )]

    async def cmd_status(self, phone: str, args: List[str], merchant_id: str) -> List[BotMessage]:
        if not args:
            return [msg.text(STATUS_PROMPT_TEXT)]

        order_id = args[0]
        result = await self.api.get_order(order_id)
        order = result.get("order") if result.get("success") else None
        if not order:
            return [msg.text(f"Order {order_id} not found.")]

        return [msg.text(
            f"📦 *Order {order_id}*\n"
            f"Status: {order.get('status', 'unknown')}\n"
            f"Total: {msg.money(order.get('currency', ''), order.get('total_amount', 0))}\n"
            f"Placed: {_format_date(order.get('created_at'))}"
        )]

    async def cmd_help(self, phone: str, args: List[str], merchant_id: str) -> List[BotMessage]:
        return [msg.text(msg.HELP_TEXT)]

    # --- Merchant commands ---

    async def cmd_orders(self, phone: str, args: List[str], merchant_id: str) -> List[BotMessage]:
        if await self._user_role(phone) not in MERCHANT_ROLES:
            return [msg.text(ACCESS_DENIED_TEXT)]

        status = args[0].lower() if args else None
        result = await self.api.list_merchant_orders(merchant_id, status)
        if not result.get("success"):
            return [msg.text("Could not load orders. Please try again.")]

        orders = result.get("orders") or []
        if not orders:
            suffix = f" with status {status}" if status else ""
            return [msg.text(f"No orders{suffix}.")]

        lines = [f"📋 *Orders* ({result.get('count', len(orders))})", ""]
        for order in orders[:5]:
            lines.append(
                f"#{order.get('id')} - {order.get('customer_phone', '-')}\n"
                f"   {msg.money(order.get('currency', ''), order.get('total_amount', 0))} • {order.get('status')} • "
                f"{_format_date(order.get('created_at'))}"
            )
        if len(orders) > 5:
            lines.append(f"...and {len(orders) - 5} more")
        return [msg.text("\n".join(lines))]

    async def cmd_dashboard(self, phone: str, args: List[str], merchant_id: str) -> List[BotMessage]:
        if await self._user_role(phone) not in MERCHANT_ROLES:
            return [msg.text(ACCESS_DENIED_TEXT)]

        result = await self.api.list_merchant_orders(merchant_id)
        if not result.get("success"):
            return [msg.error_card("Could not load dashboard", ["Try again later"])]

        orders = result.get("orders") or []
        currency = orders[0].get("currency", "") if orders else ""
        pending = sum(1 for o in orders if o.get("status") == "pending")
        revenue = sum(float(o.get("total_amount") or 0) for o in orders if o.get("status") != "cancelled")
        rows = [
            ("📦", "Orders", len(orders)),
            ("⏳", "Pending", pending),
            ("💰", "Revenue", msg.money(currency, revenue)),
        ]
        return [msg.status_card("📊 BUSINESS DASHBOARD", rows, [("orders_pending", "⏳ Pending Orders"), ("menu", "📋 Menu")])]

    # --- Admin ---

    async def cmd_admin(self, phone: str, args: List[str], merchant_id: str) -> List[BotMessage]:
        if await self._user_role(phone) not in ADMIN_ROLES:
            return [msg.text(ADMIN_DENIED_TEXT)]
        if not args:
            return [msg.error_card("Admin command required", ["Usage: !admin <command> [args]", "Type !help for commands"])]

        sub_command, rest = args[0].lower(), args[1:]
        replies = await self.admin.handle(sub_command, rest, phone)
        if replies is None:
            return [msg.text(f"Unknown admin command: {sub_command}.")]
        return replies

    # --- Natural language intents ---

    async def intent_order(self, phone: str, message: str, merchant_id: str) -> List[BotMessage]:
        result = await self.api.list_products(merchant_id)
        if not result.get("success"):
            return [msg.text("Could not load products. Please try again.")]

        matches = find_product_matches(message, result.get("products"))
        if not matches:
            return [msg.text("I could not find matching products. Type !menu to see what we offer.")]

        # Failed adds are left out of the count, not reported individually
        added = 0
        for match in matches:
            response = await self.api.add_to_cart(phone, merchant_id, match["id"], match["quantity"])
            if response.get("success"):
                added += 1
        return [msg.text(f"✅ Added {added} item(s) to your cart! Type !cart to review or !checkout to proceed.")]

    async def intent_browse(self, phone: str, message: str, merchant_id: str) -> List[BotMessage]:
        return await self.cmd_menu(phone, [], merchant_id)

    async def intent_checkout(self, phone: str, message: str, merchant_id: str) -> List[BotMessage]:
        return await self.cmd_checkout(phone, [], merchant_id)

    async def intent_status(self, phone: str, message: str, merchant_id: str) -> List[BotMessage]:
        return [msg.text(STATUS_PROMPT_TEXT)]

    async def intent_greet(self, phone: str, message: str, merchant_id: str) -> List[BotMessage]:
        return [msg.text(GREETING_TEXT)]

    async def intent_help(self, phone: str, message: str, merchant_id: str) -> List[BotMessage]:
        return [msg.text(msg.HELP_TEXT)]
