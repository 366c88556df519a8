# wacommerce/bot/admin.py

from typing import Awaitable, Callable, Dict, List, Optional

from loguru import logger

from wacommerce.bot import messages as msg
from wacommerce.bot.commerce import CommerceAPIClient
from wacommerce.bot.events import EventEmitter
from wacommerce.models.bot import BotListItem, BotMessage

AdminHandler = Callable[[List[str], str], Awaitable[List[BotMessage]]]


class AdminCommands:
    """`!admin <sub>` back-office commands. Privilege is checked by the dispatcher."""

    def __init__(self, api: CommerceAPIClient, events: Optional[EventEmitter] = None):
        self.api = api
        self.events = events
        self.handlers: Dict[str, AdminHandler] = {
            "merchants": self.merchants,
            "approve": self.approve,
            "reject": self.reject,
            "suspend": self.suspend,
            "sales": self.sales,
            "logs": self.logs,
            "broadcast": self.broadcast,
            "stats": self.stats,
            "alerts": self.alerts,
        }

    async def handle(self, sub_command: str, args: List[str], phone: str) -> Optional[List[BotMessage]]:
        handler = self.handlers.get(sub_command)
        if handler is None:
            return None
        logger.bind(service="AdminCommands", sub_command=sub_command).info("Executing admin command")
        return await handler(args, phone)

    async def merchants(self, args: List[str], phone: str) -> List[BotMessage]:
        status = args[0].lower() if args else "pending"
        response = await self.api.list_merchants(status)
        if not response.get("success"):
            return [msg.error_card("Failed to fetch merchants", ["Try again later", "Check your connection"])]

        merchants = response.get("data") or []
        if not merchants:
            return [msg.text(f"No {status} merchants found.")]

        items = [
            BotListItem(
                id=f"approve_{m.get('id')}",
                title=f"{i}. {m.get('business_name', m.get('id'))}",
                description=f"{m.get('owner_name', '-')} • {m.get('category', '-')}",
            )
            for i, m in enumerate(merchants[:10], start=1)
        ]
        plural = "s" if len(merchants) != 1 else ""
        footer = f"Showing 10 of {len(merchants)}" if len(merchants) > 10 else "Reply !admin approve <id> to approve"
        return [msg.list_message(f"👥 {status.upper()} MERCHANTS", f"Found {len(merchants)} merchant{plural}", items, footer)]

    async def approve(self, args: List[str], phone: str) -> List[BotMessage]:
        if not args:
            return [msg.error_card("Merchant ID required", ["Usage: !admin approve <merchant_id>", "Get ID from !admin merchants"])]

        merchant_id = args[0]
        response = await self.api.approve_merchant(merchant_id, phone)
        if not response.get("success"):
            return [msg.error_card(f"Failed to approve: {response.get('error', 'unknown error')}")]

        name = (response.get("data") or {}).get("business_name", merchant_id)
        if self.events:
            self.events.merchant_notification(merchant_id, "Your merchant account has been approved!", "success")
        return [msg.success_card("Merchant Approved", f"{name} has been approved!",
                                 [("admin_stats", "📊 View Stats"), ("admin_merchants", "👥 View Merchants")])]

    async def reject(self, args: List[str], phone: str) -> List[BotMessage]:
        if not args:
            return [msg.error_card("Merchant ID required", ["Usage: !admin reject <merchant_id> [reason]"])]

        merchant_id = args[0]
        reason = " ".join(args[1:]) or "Does not meet requirements"
        response = await self.api.reject_merchant(merchant_id, reason, phone)
        if not response.get("success"):
            return [msg.error_card(f"Failed to reject: {response.get('error', 'unknown error')}")]

        name = (response.get("data") or {}).get("business_name", merchant_id)
        if self.events:
            self.events.merchant_notification(merchant_id, f"Your application was rejected: {reason}", "warning")
        return [msg.success_card("Merchant Rejected", f"{name} application rejected",
                                 [("admin_merchants", "👥 View Merchants"), ("menu", "📋 Menu")])]

    async def suspend(self, args: List[str], phone: str) -> List[BotMessage]:
        if not args:
            return [msg.error_card("Merchant ID required", ["Usage: !admin suspend <merchant_id> [reason]"])]

        merchant_id = args[0]
        reason = " ".join(args[1:]) or "Violation of platform policies"
        response = await self.api.suspend_merchant(merchant_id, reason, phone)
        if not response.get("success"):
            return [msg.error_card(f"Failed to suspend: {response.get('error', 'unknown error')}")]

        name = (response.get("data") or {}).get("business_name", merchant_id)
        if self.events:
            self.events.merchant_notification(merchant_id, f"Your account was suspended: {reason}", "error")
        return [msg.success_card("Merchant Suspended", f"{name} account suspended",
                                 [("view_reason", "⚠️ View Reason"), ("admin_merchants", "👥 View Merchants")])]

    async def sales(self, args: List[str], phone: str) -> List[BotMessage]:
        if not args:
            return [msg.option_selector("📊 SELECT TIME PERIOD", "Choose a timeframe to view sales data", msg.TIMEFRAME_OPTIONS)]

        timeframe = args[0].lower()
        response = await self.api.get_system_analytics(phone, timeframe)
        if not response.get("success"):
            return [msg.error_card("Failed to fetch analytics")]

        data = response.get("data") or {}
        currency = data.get("currency", "USD")
        rows = [
            ("📦", "Total Orders", data.get("total_orders", 0)),
            ("💰", "Revenue", msg.money(currency, data.get("total_revenue") or 0)),
            ("🏪", "Merchants", data.get("merchant_count", 0)),
            ("👥", "Customers", data.get("customer_count", 0)),
            ("⭐", "Top Merchant", (data.get("top_merchant") or {}).get("name", "N/A")),
        ]
        return [msg.status_card(f"📊 Sales - {timeframe.upper()}", rows,
                                [("sales_report", "📈 Detailed Report"), ("menu", "📋 Menu")])]

    async def logs(self, args: List[str], phone: str) -> List[BotMessage]:
        if not args:
            return [msg.option_selector("📋 SYSTEM LOGS", "Select log type to view:", msg.LOG_KIND_OPTIONS)]

        kind = args[0].lower()
        response = await self.api.get_system_logs(phone, kind)
        if not response.get("success"):
            return [msg.error_card("Failed to fetch logs")]

        entries = response.get("data") or []
        if not entries:
            return [msg.text(f"No {kind} logs in the last 24h.")]
        items = [
            BotListItem(id=f"log_{i}", title=str(e.get("message", "?"))[:72], description=e.get("time"))
            for i, e in enumerate(entries[:10], start=1)
        ]
        return [msg.list_message("📋 SYSTEM LOGS", f"Recent {kind.upper()}", items, f"Total in 24h: {len(entries)}")]

    async def broadcast(self, args: List[str], phone: str) -> List[BotMessage]:
        if not args:
            return [msg.error_card("Message required", ["Usage: !admin broadcast <message>"])]

        response = await self.api.send_broadcast(phone, " ".join(args), "all")
        if not response.get("success"):
            return [msg.error_card("Failed to send broadcast")]

        recipients = (response.get("data") or {}).get("recipients_count") or "all"
        return [msg.success_card("Broadcast Sent", f"Message sent to {recipients} users",
                                 [("admin_stats", "📊 Stats"), ("menu", "📋 Menu")])]

    async def stats(self, args: List[str], phone: str) -> List[BotMessage]:
        response = await self.api.get_system_analytics(phone)
        if not response.get("success"):
            return [msg.error_card("Failed to fetch statistics")]

        data = response.get("data") or {}
        currency = data.get("currency", "USD")
        rows = [
            ("👥", "Total Users", data.get("total_users", 0)),
            ("🛍️", "Customers", data.get("customer_count", 0)),
            ("🏪", "Merchants", data.get("merchant_count", 0)),
            ("📦", "Total Orders", data.get("total_orders", 0)),
            ("💰", "Total Revenue", msg.money(currency, data.get("total_revenue") or 0)),
            ("📊", "Avg Response", f"{data.get('avg_response_time', 'N/A')}ms"),
        ]
        return [msg.status_card("📈 SYSTEM STATISTICS", rows, [("admin_backup", "💾 Backup"), ("menu", "📋 Menu")])]

    async def alerts(self, args: List[str], phone: str) -> List[BotMessage]:
        response = await self.api.get_system_alerts(phone)
        alerts = response.get("data") or []
        if not response.get("success") or not alerts:
            return [msg.text("✅ No active alerts")]

        items = [
            BotListItem(id=f"alert_{i}", title=a.get("title", "Alert"), description=a.get("description"))
            for i, a in enumerate(alerts)
        ]
        plural = "s" if len(alerts) != 1 else ""
        return [msg.list_message("🚨 SYSTEM ALERTS", f"{len(alerts)} active alert{plural}", items, "Review and take action")]
