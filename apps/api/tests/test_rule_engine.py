import asyncio
from datetime import timedelta

import pytest

from interview_credits.core.exceptions import InvalidAmountError, NotFoundError, RuleLimitReachedError, ValidationError
from interview_credits.services.rule_engine import WELCOME_BONUS_RULE


@pytest.mark.asyncio
async def test_welcome_bonus_is_allocated_once(rule_engine, ledger):
    await rule_engine.ensure_default_rules()

    first = await rule_engine.evaluate("acct-c", "login", {})
    assert [(r.rule_name, r.amount, r.allocated) for r in first] == [(WELCOME_BONUS_RULE, 5, True)]
    assert (await ledger.get_balance("acct-c")).available == 5

    second = await rule_engine.evaluate("acct-c", "login", {})
    assert second == []
    assert (await ledger.get_balance("acct-c")).available == 5


@pytest.mark.asyncio
async def test_bonus_transaction_is_tagged_with_rule(rule_engine, ledger):
    await rule_engine.ensure_default_rules()
    await rule_engine.evaluate("acct-tag", "login")

    page = await ledger.list_transactions("acct-tag")
    txn = page.transactions[0]
    assert txn.kind == "bonus"
    assert txn.rule_name == WELCOME_BONUS_RULE
    assert txn.description == f"rule:{WELCOME_BONUS_RULE}"


@pytest.mark.asyncio
async def test_concurrent_triggers_respect_the_cap(rule_engine, ledger):
    await rule_engine.ensure_default_rules()

    results = await asyncio.gather(*(rule_engine.evaluate("acct-race", "login") for _ in range(5)))

    allocated = [r for batch in results for r in batch if r.allocated]
    assert len(allocated) == 1
    assert (await ledger.get_balance("acct-race")).total == 5


@pytest.mark.asyncio
async def test_other_triggers_do_not_fire(rule_engine, ledger):
    await rule_engine.ensure_default_rules()
    assert await rule_engine.evaluate("acct-x", "interview_completed") == []
    assert (await ledger.get_balance("acct-x")).total == 0


@pytest.mark.asyncio
async def test_ensure_default_rules_keeps_existing_rule(rule_engine):
    await rule_engine.upsert_rule(
        WELCOME_BONUS_RULE, credit_amount=8, conditions={"trigger": "login"}, max_uses_per_account=1
    )
    await rule_engine.ensure_default_rules()

    rules = await rule_engine.list_rules()
    assert [(r.rule_name, r.credit_amount) for r in rules] == [(WELCOME_BONUS_RULE, 8)]


@pytest.mark.asyncio
async def test_min_interval_blocks_early_repeats(rule_engine, ledger, clock):
    await rule_engine.upsert_rule(
        "daily_login",
        credit_amount=1,
        rule_type="recurring",
        conditions={"trigger": "login", "min_interval_hours": 24},
    )

    assert len(await rule_engine.evaluate("acct-d", "login")) == 1
    clock.advance(hours=23)
    assert await rule_engine.evaluate("acct-d", "login") == []
    clock.advance(hours=1)
    assert len(await rule_engine.evaluate("acct-d", "login")) == 1

    assert (await ledger.get_balance("acct-d")).total == 2


@pytest.mark.asyncio
async def test_rules_outside_their_window_are_ignored(rule_engine, clock):
    await rule_engine.upsert_rule(
        "launch_promo",
        credit_amount=3,
        conditions={"trigger": "login"},
        valid_from=clock() + timedelta(days=1),
    )
    await rule_engine.upsert_rule(
        "expired_promo",
        credit_amount=3,
        conditions={"trigger": "login"},
        valid_from=clock() - timedelta(days=10),
        valid_until=clock() - timedelta(days=1),
    )
    await rule_engine.upsert_rule(
        "paused_promo", credit_amount=3, conditions={"trigger": "login"}, is_active=False
    )

    assert await rule_engine.evaluate("acct-w", "login") == []


@pytest.mark.asyncio
async def test_ledger_failure_is_reported_and_evaluation_continues(rule_engine, ledger, monkeypatch):
    await rule_engine.upsert_rule("a_broken", credit_amount=2, conditions={"trigger": "login"})
    await rule_engine.upsert_rule("b_working", credit_amount=3, conditions={"trigger": "login"})

    original = ledger.apply_in_unit

    async def flaky_apply(db, account_id, kind, amount, description=None, reference_id=None, *, rule_name=None):
        if rule_name == "a_broken":
            raise InvalidAmountError("boom")
        return await original(db, account_id, kind, amount, description, reference_id, rule_name=rule_name)

    monkeypatch.setattr(ledger, "apply_in_unit", flaky_apply)

    results = await rule_engine.evaluate("acct-f", "login")

    by_name = {r.rule_name: r for r in results}
    assert by_name["a_broken"].allocated is False
    assert by_name["a_broken"].error == "boom"
    assert by_name["b_working"].allocated is True
    assert (await ledger.get_balance("acct-f")).total == 3


@pytest.mark.asyncio
async def test_allocate_rule_by_name(rule_engine, ledger):
    await rule_engine.ensure_default_rules()

    result = await rule_engine.allocate_rule("acct-m", WELCOME_BONUS_RULE)
    assert result.amount == 5
    assert result.transaction_id

    with pytest.raises(RuleLimitReachedError):
        await rule_engine.allocate_rule("acct-m", WELCOME_BONUS_RULE)
    with pytest.raises(NotFoundError):
        await rule_engine.allocate_rule("acct-m", "no_such_rule")
    assert (await ledger.get_balance("acct-m")).total == 5


@pytest.mark.asyncio
async def test_upsert_rule_validates_amount(rule_engine):
    with pytest.raises(InvalidAmountError):
        await rule_engine.upsert_rule("bad", credit_amount=0)


@pytest.mark.asyncio
async def test_upsert_rule_validates_type_and_interval(rule_engine):
    with pytest.raises(ValidationError):
        await rule_engine.upsert_rule("weekly", credit_amount=1, rule_type="weekly")
    with pytest.raises(ValidationError):
        await rule_engine.upsert_rule(
            "streak", credit_amount=1, rule_type="recurring", conditions={"min_interval_hours": "soon"}
        )
    with pytest.raises(ValidationError):
        await rule_engine.upsert_rule(
            "streak", credit_amount=1, rule_type="recurring", conditions={"min_interval_hours": -1}
        )

    rule = await rule_engine.upsert_rule(
        "streak", credit_amount=1, rule_type="recurring", conditions={"min_interval_hours": "24"}
    )
    assert rule.rule_type == "recurring"
    assert [r.rule_name for r in await rule_engine.list_rules()] == ["streak"]
