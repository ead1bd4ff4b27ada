"""Smart actions gated on the resolved content type."""

import ast
import colorsys
import csv
import json
import logging
import operator
import re
from datetime import datetime, timezone
from typing import List, Optional, Tuple, Union
from urllib.parse import quote_plus

from clip_history.actions.base import ActionContext, SmartAction, call, content_clip_id, meta
from clip_history.models.schemas import Content

logger = logging.getLogger(__name__)

MATH_EXPRESSION = re.compile(r"^[\d\s+\-*/().]+$")

_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
}
_UNARY_OPS = {ast.UAdd: operator.pos, ast.USub: operator.neg}

Number = Union[int, float]


def _eval_node(node: ast.AST) -> Number:
    if isinstance(node, ast.Expression):
        return _eval_node(node.body)
    if isinstance(node, ast.Constant) and type(node.value) in (int, float):
        return node.value
    if isinstance(node, ast.BinOp) and type(node.op) in _BIN_OPS:
        return _BIN_OPS[type(node.op)](_eval_node(node.left), _eval_node(node.right))
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
        return _UNARY_OPS[type(node.op)](_eval_node(node.operand))
    raise ValueError(f"Unsupported expression element: {type(node).__name__}")


def safe_eval(expression: str) -> Optional[Number]:
    """Evaluate arithmetic built from digits, + - * / ( ) and dots only."""
    if not expression or not MATH_EXPRESSION.match(expression):
        return None
    try:
        return _eval_node(ast.parse(expression.strip(), mode="eval"))
    except (SyntaxError, ValueError, ZeroDivisionError, OverflowError) as e:
        logger.debug(f"Could not evaluate {expression!r}: {e}")
        return None


def format_number(value: Number) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _csv_rows(content: Content) -> List[List[str]]:
    lines = [line for line in content.text.splitlines() if line.strip()]
    delimiter = meta(content, "delimiter") or ","
    return [[cell.strip() for cell in row] for row in csv.reader(lines, delimiter=delimiter)]


def csv_to_json(content: Content) -> Optional[str]:
    rows = _csv_rows(content)
    if len(rows) < 2:
        return None

    headers = rows[0]
    records = [
        {header: (row[i] if i < len(row) and row[i] else None) for i, header in enumerate(headers)}
        for row in rows[1:]
    ]
    return json.dumps(records, indent=2, ensure_ascii=False)


def csv_to_markdown(content: Content) -> Optional[str]:
    rows = _csv_rows(content)
    if len(rows) < 2:
        return None

    headers = rows[0]
    lines = ["|".join(headers), "|".join("---" for _ in headers)]
    lines.extend("|".join(row) for row in rows[1:])
    return "\n".join(lines)


def format_code(content: Content) -> str:
    """Pretty-print JSON code; anything else is returned as-is."""
    if (meta(content, "language") or "").lower() == "json":
        try:
            return json.dumps(json.loads(content.text), indent=2, ensure_ascii=False)
        except ValueError:
            return content.text
    return content.text


def parse_hex(value: str) -> Optional[Tuple[int, int, int]]:
    digits = value.strip().lstrip("#")
    if len(digits) in (3, 4):
        digits = "".join(c * 2 for c in digits[:3])
    if len(digits) not in (6, 8):
        return None
    try:
        return int(digits[0:2], 16), int(digits[2:4], 16), int(digits[4:6], 16)
    except ValueError:
        return None


def _color_hex(content: Content) -> str:
    return meta(content, "hex") or content.text


def to_rgb(value: str) -> Optional[str]:
    rgb = parse_hex(value)
    if rgb is None:
        return None
    return "rgb({}, {}, {})".format(*rgb)


def to_hsl(value: str) -> Optional[str]:
    rgb = parse_hex(value)
    if rgb is None:
        return None
    h, l, s = colorsys.rgb_to_hls(*(channel / 255 for channel in rgb))
    return f"hsl({round(h * 360)}, {round(s * 100)}%, {round(l * 100)}%)"


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def to_iso_date(content: Content) -> str:
    value = meta(content, "value")
    if content.type == "timestamp" and value not in (None, ""):
        try:
            number = float(value)
        except (TypeError, ValueError):
            number = None
        if number is not None:
            seconds = number if meta(content, "unit") == "seconds" else number / 1000
            return _iso(datetime.fromtimestamp(seconds, tz=timezone.utc))
    return meta(content, "iso") or content.text


def parse_date(text: str) -> Optional[datetime]:
    """ISO 8601 date or datetime; naive values are taken as UTC."""
    candidate = (text or "").strip()
    if not candidate:
        return None
    if candidate.endswith(("Z", "z")):
        candidate = candidate[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _date_value(content: Content) -> Optional[datetime]:
    return parse_date(content.text) or parse_date(meta(content, "iso") or "")


def smart_actions(ctx: ActionContext) -> List[SmartAction]:
    """Type-specific actions, highest priority first."""

    async def copy_value(value: Optional[str]):
        if not value:
            return False
        await ctx.copy_to_clipboard(value, None)

    async def open_url(content: Content):
        await ctx.open_url(meta(content, "url") or content.text.strip())

    async def search_domain(content: Content):
        await ctx.open_url(f"https://www.google.com/search?q={quote_plus(meta(content, 'domain'))}")

    async def send_email(content: Content):
        await ctx.open_url(f"mailto:{meta(content, 'email') or content.text.strip()}")

    async def call_phone(content: Content):
        await ctx.open_url(f"tel:{content.text.strip()}")

    async def sms_phone(content: Content):
        await ctx.open_url(f"sms:{content.text.strip()}")

    async def copy_math_result(content: Content):
        result = safe_eval(content.text)
        if result is None:
            return False
        await ctx.copy_to_clipboard(format_number(result), None)

    async def copy_timestamp(content: Content):
        parsed = _date_value(content)
        if parsed is None:
            return False
        await ctx.copy_to_clipboard(str(int(parsed.timestamp())), None)

    async def reveal(content: Content):
        if ctx.on_reveal is None:
            return False
        await call(ctx.on_reveal, content_clip_id(content))

    def is_type(*types: str):
        return lambda content: content.type in types

    def has_domain(content_type: str):
        return lambda content: content.type == content_type and bool(meta(content, "domain"))

    return [
        SmartAction("open-url", "Open Link", "external", is_type("url"), open_url, shortcut="Ctrl+O"),
        SmartAction("search-url", "Search Domain", "external", has_domain("url"), search_domain),
        SmartAction("send-email", "Compose Email", "external", is_type("email"), send_email, shortcut="Ctrl+E"),
        SmartAction("call-phone", "Call", "external", is_type("phone"), call_phone),
        SmartAction("sms-phone", "Send SMS", "external", is_type("phone"), sms_phone),
        SmartAction("copy-math-result", "Copy Result", "core", is_type("math"), copy_math_result),
        SmartAction(
            "csv-to-json", "Copy as JSON", "transform", is_type("csv"),
            lambda content: copy_value(csv_to_json(content)),
        ),
        SmartAction(
            "csv-to-markdown", "Copy as Markdown", "transform", is_type("csv"),
            lambda content: copy_value(csv_to_markdown(content)),
        ),
        SmartAction(
            "format-code", "Format Code", "dev", is_type("code"),
            lambda content: copy_value(format_code(content)),
        ),
        SmartAction(
            "copy-domain", "Copy Domain", "utility", has_domain("url"),
            lambda content: copy_value(meta(content, "domain")),
        ),
        SmartAction(
            "copy-email-domain", "Copy Domain", "utility", has_domain("email"),
            lambda content: copy_value(meta(content, "domain")),
        ),
        SmartAction(
            "copy-hex", "Copy Hex", "utility", is_type("color"),
            lambda content: copy_value(_color_hex(content)),
        ),
        SmartAction(
            "copy-rgb", "Copy RGB", "transform", is_type("color"),
            lambda content: copy_value(to_rgb(_color_hex(content))),
        ),
        SmartAction(
            "copy-hsl", "Copy HSL", "transform", is_type("color"),
            lambda content: copy_value(to_hsl(_color_hex(content))),
        ),
        SmartAction(
            "copy-iso-date", "Copy ISO 8601", "utility", is_type("date", "timestamp"),
            lambda content: copy_value(to_iso_date(content)),
        ),
        SmartAction(
            "copy-timestamp", "Copy Timestamp", "utility",
            lambda content: content.type == "date" and _date_value(content) is not None,
            copy_timestamp,
        ),
        SmartAction("reveal-secret", "Reveal", "core", is_type("secret"), reveal),
    ]
