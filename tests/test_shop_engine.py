"""Tests for the shop: eligibility order, atomic redemption, fulfil/refund."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from community_rewards.database import RewardsDatabase
from community_rewards.outcomes import FailureKind, RewardResult
from community_rewards.shop_engine import ShopEngine

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


# ═══════════════════════════════════════════════════════════
#  Catalog
# ═══════════════════════════════════════════════════════════

@pytest.mark.asyncio
async def test_catalog_lists_enabled_items_ordered(shop_engine: ShopEngine):
    items = await shop_engine.get_shop_items()
    names = [i["name"] for i in items]
    assert "Retired Item" not in names
    assert names == ["Gem Badge", "Sticker", "Golden Ticket", "Shoutout", "Custom Role"]


@pytest.mark.asyncio
async def test_catalog_category_filter(shop_engine: ShopEngine):
    items = await shop_engine.get_shop_items("perks")
    assert [i["name"] for i in items] == ["Shoutout", "Custom Role"]


@pytest.mark.asyncio
async def test_reseed_keeps_stock(shop_engine: ShopEngine, item_ids, make_user):
    user = await make_user("1", currency=100)
    await shop_engine.redeem_item(user["id"], item_ids["Golden Ticket"], now=NOW)
    await shop_engine.seed_catalog()
    item = await shop_engine.get_shop_item(item_ids["Golden Ticket"])
    assert item["stock"] == 0


# ═══════════════════════════════════════════════════════════
#  can_redeem
# ═══════════════════════════════════════════════════════════

@pytest.mark.asyncio
async def test_can_redeem_missing_item(shop_engine: ShopEngine, make_user):
    user = await make_user("1")
    check = await shop_engine.can_redeem(user["id"], 9999)
    assert not check.allowed
    assert check.result is RewardResult.NOT_FOUND


@pytest.mark.asyncio
async def test_can_redeem_disabled(shop_engine: ShopEngine, item_ids, make_user):
    user = await make_user("1", currency=100)
    check = await shop_engine.can_redeem(user["id"], item_ids["Retired Item"])
    assert check.result is RewardResult.DISABLED


@pytest.mark.asyncio
async def test_can_redeem_insufficient(shop_engine: ShopEngine, item_ids, make_user):
    user = await make_user("1", currency=99)
    check = await shop_engine.can_redeem(user["id"], item_ids["Shoutout"])
    assert check.result is RewardResult.INSUFFICIENT_FUNDS
    assert "Need 100, have 99" in check.reason


@pytest.mark.asyncio
async def test_can_redeem_checks_premium_balance(shop_engine: ShopEngine, item_ids, make_user):
    user = await make_user("1", currency=1000, premium=1)
    check = await shop_engine.can_redeem(user["id"], item_ids["Gem Badge"])
    assert check.result is RewardResult.INSUFFICIENT_FUNDS


@pytest.mark.asyncio
async def test_stock_checked_before_balance(shop_engine: ShopEngine, item_ids, make_user):
    buyer = await make_user("1", currency=100)
    broke = await make_user("2")
    await shop_engine.redeem_item(buyer["id"], item_ids["Golden Ticket"], now=NOW)
    check = await shop_engine.can_redeem(broke["id"], item_ids["Golden Ticket"])
    assert check.result is RewardResult.OUT_OF_STOCK


# ═══════════════════════════════════════════════════════════
#  redeem_item
# ═══════════════════════════════════════════════════════════

@pytest.mark.asyncio
async def test_redeem_auto_fulfil(shop_engine: ShopEngine, item_ids, make_user, database):
    user = await make_user("1", currency=150)
    outcome = await shop_engine.redeem_item(user["id"], item_ids["Shoutout"], now=NOW)
    assert outcome.success
    assert outcome.status == "fulfilled"
    assert (await database.get_user(user["id"]))["currency"] == 50
    redemption = await database.get_redemption(outcome.redemption_id)
    assert redemption["status"] == "fulfilled"
    assert redemption["cost"] == 100


@pytest.mark.asyncio
async def test_redeem_requires_input(shop_engine: ShopEngine, item_ids, make_user, database):
    user = await make_user("1", currency=600)
    outcome = await shop_engine.redeem_item(user["id"], item_ids["Custom Role"], user_input="  ")
    assert outcome.result is RewardResult.INVALID_ARGS
    assert outcome.message == "Which role colour?"
    assert (await database.get_user(user["id"]))["currency"] == 600

    ok = await shop_engine.redeem_item(user["id"], item_ids["Custom Role"], user_input="teal")
    assert ok.success
    assert ok.status == "pending"
    assert (await database.get_redemption(ok.redemption_id))["user_input"] == "teal"


@pytest.mark.asyncio
async def test_redeem_premium_item(shop_engine: ShopEngine, item_ids, make_user, database):
    user = await make_user("1", currency=5, premium=2)
    outcome = await shop_engine.redeem_item(user["id"], item_ids["Gem Badge"])
    assert outcome.success
    row = await database.get_user(user["id"])
    assert (row["currency"], row["premium_currency"]) == (5, 0)


@pytest.mark.asyncio
async def test_concurrent_redemption_of_last_unit(shop_engine: ShopEngine, item_ids, make_user, database):
    a = await make_user("a", currency=100)
    b = await make_user("b", currency=100)
    outcomes = await asyncio.gather(
        shop_engine.redeem_item(a["id"], item_ids["Golden Ticket"], now=NOW),
        shop_engine.redeem_item(b["id"], item_ids["Golden Ticket"], now=NOW),
    )
    winners = [o for o in outcomes if o.success]
    losers = [o for o in outcomes if not o.success]
    assert len(winners) == 1
    assert losers[0].result is RewardResult.OUT_OF_STOCK

    balances = sorted([
        (await database.get_user(a["id"]))["currency"],
        (await database.get_user(b["id"]))["currency"],
    ])
    assert balances == [50, 100]
    assert (await shop_engine.get_shop_item(item_ids["Golden Ticket"]))["stock"] == 0


@pytest.mark.asyncio
async def test_user_and_global_cooldowns(shop_engine: ShopEngine, item_ids, make_user):
    a = await make_user("a", currency=100)
    b = await make_user("b", currency=100)
    sticker = item_ids["Sticker"]
    assert (await shop_engine.redeem_item(a["id"], sticker, now=NOW)).success

    again = await shop_engine.redeem_item(a["id"], sticker, now=NOW + timedelta(minutes=1))
    assert again.result is RewardResult.COOLDOWN
    assert "29 minute" in again.message

    other = await shop_engine.can_redeem(b["id"], sticker, now=NOW + timedelta(minutes=1))
    assert other.result is RewardResult.COOLDOWN
    assert "global cooldown" in other.reason

    assert (await shop_engine.can_redeem(b["id"], sticker, now=NOW + timedelta(minutes=5))).allowed
    assert (await shop_engine.can_redeem(a["id"], sticker, now=NOW + timedelta(minutes=30))).allowed


# ═══════════════════════════════════════════════════════════
#  Fulfil / refund
# ═══════════════════════════════════════════════════════════

@pytest.mark.asyncio
async def test_fulfil_pending(shop_engine: ShopEngine, item_ids, make_user):
    user = await make_user("1", currency=500)
    red = await shop_engine.redeem_item(user["id"], item_ids["Custom Role"], user_input="red")
    pending = await shop_engine.get_pending_redemptions()
    assert [p["id"] for p in pending] == [red.redemption_id]

    outcome = await shop_engine.fulfill_redemption(red.redemption_id, "mod", "done")
    assert outcome.success
    assert outcome.redemption["status"] == "fulfilled"
    assert outcome.redemption["fulfilled_by"] == "mod"

    twice = await shop_engine.fulfill_redemption(red.redemption_id, "mod")
    assert twice.result is RewardResult.INVALID_STATE
    assert twice.result.kind is FailureKind.CONFLICT


@pytest.mark.asyncio
async def test_fulfil_missing(shop_engine: ShopEngine):
    assert (await shop_engine.fulfill_redemption(404, "mod")).result is RewardResult.NOT_FOUND


@pytest.mark.asyncio
async def test_refund_once(shop_engine: ShopEngine, item_ids, make_user, database: RewardsDatabase):
    user = await make_user("1", currency=100)
    red = await shop_engine.redeem_item(user["id"], item_ids["Golden Ticket"], now=NOW)
    assert (await database.get_user(user["id"]))["currency"] == 50

    first = await shop_engine.refund_redemption(red.redemption_id, "mod", "mistake")
    assert first.success
    assert first.redemption["status"] == "refunded"
    assert (await database.get_user(user["id"]))["currency"] == 100
    assert (await shop_engine.get_shop_item(item_ids["Golden Ticket"]))["stock"] == 1

    second = await shop_engine.refund_redemption(red.redemption_id, "mod", "again")
    assert second.result is RewardResult.INVALID_STATE
    assert "already been refunded" in second.message
    assert (await database.get_user(user["id"]))["currency"] == 100
    assert (await shop_engine.get_shop_item(item_ids["Golden Ticket"]))["stock"] == 1


@pytest.mark.asyncio
async def test_refund_keeps_fulfilment_record(shop_engine: ShopEngine, item_ids, make_user):
    user = await make_user("1", currency=500)
    red = await shop_engine.redeem_item(user["id"], item_ids["Custom Role"], user_input="teal", now=NOW)
    await shop_engine.fulfill_redemption(red.redemption_id, "mod-a", "role given")

    outcome = await shop_engine.refund_redemption(red.redemption_id, "mod-b", "wrong colour")
    row = outcome.redemption
    assert (row["fulfilled_by"], row["notes"]) == ("mod-a", "role given")
    assert row["fulfilled_at"] is not None
    assert (row["refunded_by"], row["refund_reason"]) == ("mod-b", "wrong colour")
    assert row["refunded_at"] is not None


@pytest.mark.asyncio
async def test_refund_fulfilled_can_be_disallowed(shop_engine: ShopEngine, item_ids, make_user):
    user = await make_user("1", currency=100)
    red = await shop_engine.redeem_item(user["id"], item_ids["Shoutout"])
    outcome = await shop_engine.refund_redemption(red.redemption_id, "mod", allow_fulfilled=False)
    assert outcome.result is RewardResult.INVALID_STATE


@pytest.mark.asyncio
async def test_refund_premium_goes_back_to_premium(shop_engine: ShopEngine, item_ids, make_user, database):
    user = await make_user("1", premium=2)
    red = await shop_engine.redeem_item(user["id"], item_ids["Gem Badge"])
    await shop_engine.refund_redemption(red.redemption_id, "mod")
    row = await database.get_user(user["id"])
    assert (row["currency"], row["premium_currency"]) == (0, 2)


@pytest.mark.asyncio
async def test_concurrent_refunds_credit_once(shop_engine: ShopEngine, item_ids, make_user, database):
    user = await make_user("1", currency=100)
    red = await shop_engine.redeem_item(user["id"], item_ids["Shoutout"])
    outcomes = await asyncio.gather(*[
        shop_engine.refund_redemption(red.redemption_id, "mod") for _ in range(4)
    ])
    assert sum(o.success for o in outcomes) == 1
    assert (await database.get_user(user["id"]))["currency"] == 100


@pytest.mark.asyncio
async def test_user_redemption_history(shop_engine: ShopEngine, item_ids, make_user):
    user = await make_user("1", currency=300)
    await shop_engine.redeem_item(user["id"], item_ids["Shoutout"], now=NOW)
    await shop_engine.redeem_item(user["id"], item_ids["Golden Ticket"], now=NOW + timedelta(minutes=1))
    history = await shop_engine.get_user_redemptions(user["id"])
    assert [h["item_name"] for h in history] == ["Golden Ticket", "Shoutout"]
