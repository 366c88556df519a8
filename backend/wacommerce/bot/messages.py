# wacommerce/bot/messages.py

from typing import Any, Iterable, List, Optional, Sequence, Tuple

from wacommerce.models.bot import BotButton, BotListItem, BotMessage

DIVIDER = "━━━━━━━━━━━━━━━"

GENERIC_ERROR_TEXT = "Sorry, something went wrong. Please try again or type !help for assistance."

HELP_TEXT = """📚 *Available Commands*

👥 *Customer:*
!register [name] - Register
!menu / !m - View products
!search [query] - Search products
!add [product] [qty] - Add to cart
!cart / !c - View cart
!remove [product] - Remove from cart
!clear - Clear cart
!checkout / !pay - Place order
!status [order-id] - Check order
!orders - Your orders

🏪 *Merchant:*
!orders [status] - View orders
!orders pending - Filter by status
!dashboard - Business stats

*Natural Language:*
Just message: "I want 2 sadza please"
or "Can I get chicken and rice?"

Type !help for this message"""


def text(content: str) -> BotMessage:
    return BotMessage(type="text", content=content)


def buttons(content: str, options: Iterable[Tuple[str, str]]) -> BotMessage:
    """options: (id, label) pairs."""
    return BotMessage(
        type="buttons",
        content=content,
        buttons=[BotButton(id=i, label=label) for i, label in options],
    )


def list_message(header: str, body: str, items: Iterable[BotListItem], footer: Optional[str] = None) -> BotMessage:
    content = f"*{header}*\n{body}\n{footer or DIVIDER}"
    return BotMessage(type="list", content=content, list_items=list(items))


def error_card(title: str, suggestions: Sequence[str] = ()) -> BotMessage:
    lines = [f"❌ *{title}*"]
    if suggestions:
        lines.append("")
        lines.extend(f"• {s}" for s in suggestions)
    return text("\n".join(lines))


def success_card(title: str, body: str, options: Iterable[Tuple[str, str]] = ()) -> BotMessage:
    return buttons(f"✅ *{title}*\n\n{body}", options)


def status_card(title: str, rows: Iterable[Tuple[str, str, Any]], options: Iterable[Tuple[str, str]] = ()) -> BotMessage:
    """rows: (emoji, label, value) triples."""
    body = "\n".join(f"{emoji} {label}: {value}" for emoji, label, value in rows)
    return buttons(f"*{title}*\n{DIVIDER}\n{body}", options)


def option_selector(title: str, description: str, options: Iterable[Tuple[str, str, str]]) -> BotMessage:
    """Interactive picker used when a command is sent without its argument.
    options: (id, title, description) triples."""
    return list_message(title, description, [BotListItem(id=i, title=t, description=d or None) for i, t, d in options])


TIMEFRAME_OPTIONS: List[Tuple[str, str, str]] = [
    ("today", "📅 Today", ""),
    ("week", "📆 This Week", ""),
    ("month", "📊 This Month", ""),
]

LOG_KIND_OPTIONS: List[Tuple[str, str, str]] = [
    ("errors", "❌ Errors", "System and API errors"),
    ("warnings", "⚠️ Warnings", "Warning messages"),
    ("info", "ℹ️ Info Logs", "General information"),
    ("all", "📋 All Logs", "View all system logs"),
]


def money(currency: Any, amount: Any) -> str:
    try:
        return f"{currency} {float(amount):.2f}"
    except (TypeError, ValueError):
        return f"{currency} {amount}"
