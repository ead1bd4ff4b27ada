"""Tests for smart actions and the action registry."""

import json
from unittest.mock import AsyncMock, Mock

import pytest

from clip_history.actions.base import ActionContext, SmartAction
from clip_history.actions.registry import ActionRegistry
from clip_history.actions.standard import editor_extension
from clip_history.actions.type_specific import parse_date, safe_eval, to_hsl, to_rgb
from clip_history.core.classifier import clip_to_content
from clip_history.models.schemas import Clip


def content_for(text, detected_type="text", metadata=None, **fields):
    clip = Clip.from_text(text, detected_type=detected_type, metadata=metadata)
    if fields:
        clip = clip.model_copy(update=fields)
    return clip_to_content(clip)


def ids(actions):
    return [action.id for action in actions]


class TestActionRegistry:
    @pytest.fixture
    def context(self):
        return ActionContext(
            copy_to_clipboard=AsyncMock(),
            open_url=AsyncMock(),
            open_path=AsyncMock(),
            open_text_in_editor=AsyncMock(),
            on_delete=AsyncMock(),
            on_toggle_pin=AsyncMock(return_value=False),
            on_toggle_favorite=AsyncMock(return_value=True),
            on_generate_embedding=AsyncMock(),
            on_reveal=Mock(),
        )

    @pytest.fixture
    def registry(self, context):
        return ActionRegistry(context)

    def test_catalog_order_and_groups(self, registry):
        groups = [action.group for action in registry.actions]

        assert groups == sorted(groups, key=["smart", "standard", "meta"].index)
        assert ids(registry.actions)[:3] == ["open-url", "search-url", "send-email"]
        assert ids(registry.actions)[-3:] == ["favorite", "pin", "delete"]

    def test_resolve_is_deterministic(self, registry):
        content = content_for(
            "https://example.com", "url", {"url": "https://example.com", "domain": "example.com"}
        )

        first = ids(registry.resolve(content))
        assert first == ids(registry.resolve(content))
        assert first == [
            "open-url",
            "search-url",
            "copy-domain",
            "copy",
            "open-default-editor",
            "generate-embedding",
            "favorite",
            "pin",
            "delete",
        ]

    def test_domain_actions_need_domain(self, registry):
        content = content_for("https://example.com", "url")

        resolved = ids(registry.resolve(content))

        assert "open-url" in resolved
        assert "search-url" not in resolved
        assert "copy-domain" not in resolved

    def test_resolve_grouped_partitions_resolve(self, registry):
        content = content_for("#ff8800", "color", {"hex": "#ff8800"})

        grouped = registry.resolve_grouped(content)

        assert ids(grouped["smart"]) == ["copy-hex", "copy-rgb", "copy-hsl"]
        flattened = grouped["smart"] + grouped["standard"] + grouped["meta"]
        assert ids(flattened) == ids(registry.resolve(content))

    def test_resolve_none(self, registry):
        assert registry.resolve(None) == []

    def test_generate_embedding_gated(self, context):
        content = content_for("text", has_embedding=True)
        assert "generate-embedding" not in ids(ActionRegistry(context).resolve(content))

        context.on_generate_embedding = None
        plain = content_for("text")
        assert "generate-embedding" not in ids(ActionRegistry(context).resolve(plain))

    def test_copy_html_needs_html(self, registry):
        assert "copy-html" not in ids(registry.resolve(content_for("plain")))
        html = content_for("bold", content_html="<b>bold</b>")
        assert "copy-html" in ids(registry.resolve(html))

    def test_is_active_is_cosmetic(self, registry):
        content = content_for("note", is_favorite=True)

        favorite = registry.get("favorite")

        assert favorite.active(content) is True
        assert registry.get("pin").active(content) is False
        assert favorite in registry.resolve(content_for("other note"))

    @pytest.mark.asyncio
    async def test_copy_passes_clip_id(self, registry, context):
        content = content_for("hello")

        assert await registry.run("copy", content) is True
        context.copy_to_clipboard.assert_awaited_once_with("hello", content.clip.id)

    @pytest.mark.asyncio
    async def test_failing_action_reports_false(self, registry, context):
        context.copy_to_clipboard.side_effect = RuntimeError("clipboard locked")
        content = content_for("hello")

        assert await registry.run("copy", content) is False
        # Registry keeps working afterwards
        assert ids(registry.resolve(content)) == ids(registry.resolve(content))

    @pytest.mark.asyncio
    async def test_sync_executor(self):
        calls = []
        action = SmartAction("x", "X", "utility", lambda c: True, lambda c: calls.append(c))

        assert await action.run("content") is True
        assert calls == ["content"]

    @pytest.mark.asyncio
    async def test_run_unknown_action(self, registry):
        with pytest.raises(KeyError):
            await registry.run("does-not-exist", content_for("x"))

    @pytest.mark.asyncio
    async def test_run_inapplicable_action(self, registry, context):
        assert await registry.run("open-url", content_for("plain")) is False
        context.open_url.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_meta_toggle_false_is_still_success(self, registry, context):
        content = content_for("pinned", is_pinned=True)

        assert await registry.run("pin", content) is True
        context.on_toggle_pin.assert_awaited_once_with(content.clip.id)

    @pytest.mark.asyncio
    async def test_csv_to_json(self, registry, context):
        content = content_for("name,age\nada,36\n\nbob,", "csv", {"delimiter": ","})

        assert await registry.run("csv-to-json", content) is True
        copied = context.copy_to_clipboard.await_args.args[0]
        assert json.loads(copied) == [{"name": "ada", "age": "36"}, {"name": "bob", "age": None}]

    @pytest.mark.asyncio
    async def test_csv_to_markdown(self, registry, context):
        content = content_for("a;b\n1;2", "csv", {"delimiter": ";"})

        assert await registry.run("csv-to-markdown", content) is True
        context.copy_to_clipboard.assert_awaited_once_with("a|b\n---|---\n1|2", None)

    @pytest.mark.asyncio
    async def test_csv_single_line_does_nothing(self, registry, context):
        assert await registry.run("csv-to-json", content_for("only,header", "csv")) is False
        context.copy_to_clipboard.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_math_result(self, registry, context):
        assert await registry.run("copy-math-result", content_for("(1 + 2) * 3 / 2", "math")) is True
        context.copy_to_clipboard.assert_awaited_once_with("4.5", None)

    @pytest.mark.asyncio
    async def test_format_code_json(self, registry, context):
        content = content_for('{"a":1}', "code", {"language": "json"})

        assert await registry.run("format-code", content) is True
        context.copy_to_clipboard.assert_awaited_once_with('{\n  "a": 1\n}', None)

    @pytest.mark.asyncio
    async def test_email_actions(self, registry, context):
        content = content_for("ada@example.com", "email", {"email": "ada@example.com", "domain": "example.com"})

        assert await registry.run("send-email", content) is True
        context.open_url.assert_awaited_once_with("mailto:ada@example.com")
        assert await registry.run("copy-email-domain", content) is True
        context.copy_to_clipboard.assert_awaited_once_with("example.com", None)

    @pytest.mark.asyncio
    async def test_phone_actions(self, registry, context):
        content = content_for(" +1 555 0100 ", "phone")

        await registry.run("call-phone", content)
        await registry.run("sms-phone", content)

        assert [c.args[0] for c in context.open_url.await_args_list] == [
            "tel:+1 555 0100",
            "sms:+1 555 0100",
        ]

    @pytest.mark.asyncio
    async def test_date_actions(self, registry, context):
        content = content_for("2024-01-02T03:04:05Z", "date")

        assert "copy-timestamp" in ids(registry.resolve(content))
        await registry.run("copy-timestamp", content)
        context.copy_to_clipboard.assert_awaited_once_with("1704164645", None)

        unparseable = content_for("next tuesday", "date")
        assert "copy-timestamp" not in ids(registry.resolve(unparseable))
        assert "copy-iso-date" in ids(registry.resolve(unparseable))

    @pytest.mark.asyncio
    async def test_iso_date_from_timestamp(self, registry, context):
        content = content_for("1704164645", "timestamp", {"unit": "seconds", "value": 1704164645})

        await registry.run("copy-iso-date", content)
        context.copy_to_clipboard.assert_awaited_once_with("2024-01-02T03:04:05.000Z", None)

    @pytest.mark.asyncio
    async def test_reveal_secret(self, registry, context):
        content = content_for("hunter2", "secret")

        assert await registry.run("reveal-secret", content) is True
        context.on_reveal.assert_called_once_with(content.clip.id)

    @pytest.mark.asyncio
    async def test_open_in_editor_text_and_files(self, registry, context):
        code = content_for("fn main() {}", "code", {"language": "Rust"})
        await registry.run("open-default-editor", code)
        context.open_text_in_editor.assert_awaited_once_with("fn main() {}", "rs")

        files_clip = Clip(
            id="f1", content_type="files", content_text="a.txt", file_paths=["/tmp/a.txt", "/tmp/b.txt"]
        )
        assert await registry.run("open-default-editor", clip_to_content(files_clip)) is True
        assert [c.args[0] for c in context.open_path.await_args_list] == ["/tmp/a.txt", "/tmp/b.txt"]

        image = clip_to_content({"id": "i1", "content_type": "image"})
        assert await registry.run("open-default-editor", image) is False


class TestActionHelpers:
    @pytest.mark.parametrize(
        "expression,expected",
        [
            ("1 + 2", 3),
            ("2 * (3 + 4)", 14),
            ("-4 / 2", -2.0),
            ("1.5 * 2", 3.0),
        ],
    )
    def test_safe_eval(self, expression, expected):
        assert safe_eval(expression) == expected

    @pytest.mark.parametrize(
        "expression",
        ["", "1 / 0", "2 ** 10", "7 // 2", "__import__('os')", "1 +", "abs(1)"],
    )
    def test_safe_eval_rejects(self, expression):
        assert safe_eval(expression) is None

    def test_colors(self):
        assert to_rgb("#ff8800") == "rgb(255, 136, 0)"
        assert to_rgb("#f80") == "rgb(255, 136, 0)"
        assert to_hsl("#ff0000") == "hsl(0, 100%, 50%)"
        assert to_rgb("not a color") is None

    def test_parse_date(self):
        assert parse_date("2024-01-02").year == 2024
        assert parse_date("yesterday") is None

    def test_editor_extension(self):
        assert editor_extension(content_for("x", "code", {"language": "python"})) == "py"
        assert editor_extension(content_for("x", "code", {"language": "zig"})) == "zig"
        assert editor_extension(content_for("{}", "json")) == "json"
        assert editor_extension(content_for("a,b", "csv")) == "csv"
        assert editor_extension(content_for("plain")) == "txt"
