"""
Tests for the message handling path: extraction, de-duplication, redemption and reporting.
"""

import asyncio

import pytest

from autoredeem import RedeemResult, RedemptionStatus, VoucherBot, format_stats
from conftest import message

LINK = "https://gift.truemoney.com/campaign/?v=AbC123XyZ9"


def drain(notifier):
    items = []
    while not notifier.queue.empty():
        items.append(notifier.queue.get_nowait())
    return items


class TestVoucherBot:
    @pytest.mark.asyncio
    async def test_redeems_link_and_updates_stats(self, ctx, redeemer):
        bot = VoucherBot(ctx)

        results = await bot.handle_message(message(f"claim it: {LINK}"))

        assert redeemer.calls == ["AbC123XyZ9"]
        assert [r.success for r in results] == [True]
        assert ctx.stats.success_count == 1
        assert ctx.stats.total_amount == 20.0
        assert "AbC123XyZ9" in ctx.redeemed

    @pytest.mark.asyncio
    async def test_duplicate_code_is_submitted_once(self, ctx, redeemer):
        bot = VoucherBot(ctx)

        await bot.handle_message(message(LINK, message_id="1"))
        await bot.handle_message(message(f"again {LINK}", message_id="2"))

        assert redeemer.calls == ["AbC123XyZ9"]

    @pytest.mark.asyncio
    async def test_concurrent_duplicates_are_submitted_once(self, ctx, redeemer):
        bot = VoucherBot(ctx)

        await asyncio.gather(*(bot.handle_message(message(LINK, message_id=str(i))) for i in range(5)))

        assert redeemer.calls == ["AbC123XyZ9"]

    @pytest.mark.asyncio
    async def test_failed_code_can_be_retried(self, ctx, redeemer):
        redeemer.results["AbC123XyZ9"] = [
            RedeemResult.fail("AbC123XyZ9", RedemptionStatus.ERROR.value, "timeout"),
        ]
        bot = VoucherBot(ctx)

        await bot.handle_message(message(LINK))
        await bot.handle_message(message(LINK))
        await bot.handle_message(message(LINK))

        assert redeemer.calls == ["AbC123XyZ9", "AbC123XyZ9"]
        assert ctx.stats.fail_count == 1
        assert ctx.stats.success_count == 1

    @pytest.mark.asyncio
    async def test_ignores_bots_and_self(self, ctx, redeemer):
        ctx.self_user_id = "99"
        bot = VoucherBot(ctx)

        await bot.handle_message(message(LINK, bot=True))
        await bot.handle_message(message(LINK, author_id="99"))

        assert redeemer.calls == []

    @pytest.mark.asyncio
    async def test_qr_attachments_fan_out(self, ctx, redeemer, scanner):
        scanner.payloads = {
            "https://cdn.test/a.png": "https://gift.truemoney.com/campaign/?v=QRone",
            "https://cdn.test/b.png": "https://gift.truemoney.com/campaign/?v=QRtwo",
            "https://cdn.test/c.png": ValueError("Unreadable image data"),
            "https://cdn.test/d.png": None,
        }
        attachments = [
            {"url": url, "content_type": "image/png", "filename": url.rsplit("/", 1)[1]}
            for url in scanner.payloads
        ]
        attachments.append({"url": "https://cdn.test/notes.txt", "content_type": "text/plain", "filename": "notes.txt"})
        bot = VoucherBot(ctx)

        results = await bot.handle_message(message("look", attachments=attachments))

        assert sorted(redeemer.calls) == ["QRone", "QRtwo"]
        assert len(results) == 2
        assert "https://cdn.test/notes.txt" not in scanner.scanned

    @pytest.mark.asyncio
    async def test_same_code_in_text_and_qr(self, ctx, redeemer, scanner):
        scanner.payloads = {"https://cdn.test/a.png": LINK}
        bot = VoucherBot(ctx)

        await bot.handle_message(message(LINK, attachments=[{"url": "https://cdn.test/a.png", "content_type": "image/png"}]))

        assert redeemer.calls == ["AbC123XyZ9"]

    @pytest.mark.asyncio
    async def test_success_is_notified(self, ctx):
        bot = VoucherBot(ctx)

        await bot.handle_message(message(LINK, channel_id="321"))

        [notification] = drain(ctx.notifier)
        assert notification.kind == "success"
        assert "20.00" in notification.text
        assert "Somchai" in notification.text
        assert notification.channel_id == "321"

    @pytest.mark.asyncio
    async def test_failure_notified_only_when_enabled(self, ctx, redeemer):
        redeemer.results["AbC123XyZ9"] = [
            RedeemResult.fail("AbC123XyZ9", "VOUCHER_OUT_OF_STOCK", "out of stock"),
            RedeemResult.fail("AbC123XyZ9", "VOUCHER_OUT_OF_STOCK", "out of stock"),
        ]
        bot = VoucherBot(ctx)

        await bot.handle_message(message(LINK))
        assert drain(ctx.notifier) == []

        ctx.config.send_fail_message = True
        await bot.handle_message(message(LINK))
        [notification] = drain(ctx.notifier)
        assert notification.kind == "failure"
        assert "out of stock" in notification.text

    @pytest.mark.asyncio
    async def test_handler_errors_are_contained(self, ctx, redeemer):
        async def explode(voucher):
            raise RuntimeError("boom")

        redeemer.redeem = explode
        bot = VoucherBot(ctx)

        assert await bot.handle_message(message(LINK)) == []

    @pytest.mark.asyncio
    async def test_one_failing_job_does_not_drop_the_others(self, ctx, redeemer):
        original = redeemer.redeem

        async def flaky(voucher):
            if voucher == "BAD1":
                raise RuntimeError("boom")
            return await original(voucher)

        redeemer.redeem = flaky
        bot = VoucherBot(ctx)
        text = "https://gift.truemoney.com/campaign/?v=BAD1 https://gift.truemoney.com/campaign/?v=GOOD1"

        results = await bot.handle_message(message(text))

        assert [r.voucher for r in results] == ["GOOD1"]
        assert "BAD1" not in ctx.redeemed
        assert "GOOD1" in ctx.redeemed


class TestCommands:
    @pytest.mark.asyncio
    async def test_owner_commands(self, ctx):
        bot = VoucherBot(ctx)

        await bot.handle_message(message("!ping", author_id="42", channel_id="5", message_id="9"))
        await bot.handle_message(message("!stats", author_id="42"))
        await bot.handle_message(message("!help", author_id="42"))

        replies = drain(ctx.notifier)
        assert [r.kind for r in replies] == ["command"] * 3
        assert replies[0].text == "Pong! Bot is online"
        assert (replies[0].channel_id, replies[0].message_id) == ("5", "9")
        assert "Bot Statistics" in replies[1].text
        assert "!ping" in replies[2].text

    @pytest.mark.asyncio
    async def test_commands_from_others_are_ignored(self, ctx, redeemer):
        bot = VoucherBot(ctx)

        await bot.handle_message(message("!ping", author_id="7"))

        assert drain(ctx.notifier) == []
        assert redeemer.calls == []

    def test_format_stats(self, ctx):
        ctx.stats.record(RedeemResult.ok("a", 20.0, "x"))
        ctx.stats.record(RedeemResult.fail("b", "ERROR", "y"))
        ctx.redeemed.claim("a")

        text = format_stats(ctx)

        assert "Success: 1" in text
        assert "Failed: 1" in text
        assert "Success Rate: 50.0%" in text
        assert "Total Earned: 20.00฿" in text
        assert "Redeemed: 1 unique vouchers" in text
