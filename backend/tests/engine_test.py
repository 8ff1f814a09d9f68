from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from cuematch.engine import Events
from cuematch.exceptions import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from cuematch.models import Match, MatchStatus, TransactionType
from cuematch.repositories import LedgerRepository, MatchRepository


def final(first, first_score, second, second_score):
    return [{"user_id": first, "score": first_score}, {"user_id": second, "score": second_score}]


def of_type(entries, kind):
    return [e for e in entries if e.transaction_type == kind]


# =============================================================================
# Desafío y aceptación
# =============================================================================

async def test_create_challenge(engine, users, publisher):
    match = await engine.create_challenge(users.alice, users.bob, "25.5", {"club_id": "c1"})

    assert match["status"] == "pending"
    assert match["players"] == [users.alice, users.bob]
    assert match["entry_fee"] == "25.50"
    assert match["meta"] == {"club_id": "c1"}

    [(kind, target, _, payload)] = publisher.named(Events.CHALLENGE_RECEIVED)
    assert (kind, target) == ("user", users.bob)
    assert payload["challenger_info"]["nickname"] == "alice"
    assert payload["challenger_info"]["avatar"] == "A"


@pytest.mark.parametrize("fee", [-1, "abc"])
async def test_create_challenge_rejects_bad_fee(engine, users, fee):
    with pytest.raises(ValidationError):
        await engine.create_challenge(users.alice, users.bob, fee)


async def test_create_challenge_rejects_self_and_unknown(engine, users):
    with pytest.raises(ValidationError):
        await engine.create_challenge(users.alice, users.alice, 10)
    with pytest.raises(NotFoundError):
        await engine.create_challenge(users.alice, "12345678-1234-5678-1234-567812345678", 10)


async def test_accept_starts_match_without_moving_funds(engine, users, publisher, fetch_user, ledger_for):
    match = await engine.create_challenge(users.alice, users.bob, 100)
    started = await engine.accept_challenge(match["match_id"], users.bob)

    assert started["status"] == "ongoing"
    assert started["started_at"] is not None
    assert (await fetch_user(users.alice)).available_balance == Decimal("1000.00")
    assert (await fetch_user(users.bob)).available_balance == Decimal("1000.00")
    assert await ledger_for(match["match_id"]) == []

    notified = {target for _, target, _, _ in publisher.named(Events.MATCH_STARTED)}
    assert notified == {users.alice, users.bob}
    payload = publisher.named(Events.MATCH_STARTED)[0][3]
    assert payload["opponent_info"]["user_id_tag"] == "BOB22"


async def test_accept_twice_is_noop(engine, users, fetch_user, ledger_for):
    match = await engine.create_challenge(users.alice, users.bob, 100)
    first = await engine.accept_challenge(match["match_id"], users.bob)
    second = await engine.accept_challenge(match["match_id"], users.alice)

    assert second["started_at"] == first["started_at"]
    assert await ledger_for(match["match_id"]) == []
    assert (await fetch_user(users.bob)).balance_version == 0


async def test_accept_by_outsider(engine, users):
    match = await engine.create_challenge(users.alice, users.bob, 100)
    with pytest.raises(AuthorizationError):
        await engine.accept_challenge(match["match_id"], users.carol)


async def test_accept_with_empty_balance(engine, users, fetch_user):
    # carol tiene saldo 0: aceptar no depende del saldo
    match = await engine.create_challenge(users.alice, users.carol, 50)
    started = await engine.accept_challenge(match["match_id"], users.carol)

    assert started["status"] == "ongoing"
    assert (await fetch_user(users.carol)).available_balance == Decimal("0.00")


async def test_accept_terminal_match(engine, users):
    match = await engine.create_challenge(users.alice, users.bob, 0)
    await engine.cancel_match(match["match_id"], requested_by=users.alice)
    with pytest.raises(ConflictError):
        await engine.accept_challenge(match["match_id"], users.bob)


async def test_decline(engine, users, publisher):
    match = await engine.create_challenge(users.alice, users.bob, 100)

    with pytest.raises(AuthorizationError):
        await engine.decline_challenge(match["match_id"], users.alice)

    result = await engine.decline_challenge(match["match_id"], users.bob)
    assert result.match["status"] == "cancelled"
    assert result.match["cancellation_reason"] == "declined"
    assert result.refunds == {users.alice: "100.00", users.bob: "100.00"}
    assert {t for _, t, _, _ in publisher.named(Events.MATCH_DECLINED)} == {users.alice, users.bob}


async def test_decline_ongoing_is_conflict(engine, users, start_match):
    match = await start_match()
    with pytest.raises(ConflictError):
        await engine.decline_challenge(match["match_id"], users.bob)


# =============================================================================
# Liquidación
# =============================================================================

async def test_finish_settles_pot(engine, users, publisher, fetch_user, ledger_for):
    match = await engine.create_challenge(users.alice, users.bob, 100)
    await engine.accept_challenge(match["match_id"], users.bob)

    result = await engine.finish_match(
        match["match_id"], users.alice, final(users.alice, 8, users.bob, 3), requested_by=users.bob
    )

    assert result.already_finalized is False
    assert result.payout == Decimal("180.00")
    assert result.commission == Decimal("20.00")
    assert result.match["status"] == "finished"
    assert result.match["winner_id"] == users.alice
    assert result.match["finish_source"] == "api"
    assert result.match["scores"] == final(users.alice, 8, users.bob, 3)

    alice = await fetch_user(users.alice)
    bob = await fetch_user(users.bob)
    assert alice.available_balance == Decimal("1180.00")
    assert alice.career_earnings == Decimal("180.00")
    assert alice.total_winnings == Decimal("180.00")
    assert alice.total_wins == 1
    assert bob.available_balance == Decimal("1000.00")
    assert bob.total_losses == 1

    entries = await ledger_for(match["match_id"])
    assert [e.amount for e in of_type(entries, TransactionType.PAYOUT)] == [Decimal("180.00")]
    assert [e.amount for e in of_type(entries, TransactionType.FEE)] == [Decimal("20.00")]

    # Suma con signo del Ledger == delta neto de los saldos
    signed = sum(e.signed_amount for e in entries)
    net = (alice.available_balance - 1000) + (bob.available_balance - 1000)
    assert signed == net == Decimal("180.00")

    for event in (Events.MATCH_FINISHED, Events.MATCH_RESULT):
        assert {t for _, t, _, _ in publisher.named(event)} == {users.alice, users.bob}


async def test_finish_twice_returns_first_result(engine, users, start_match, fetch_user, ledger_for):
    match = await start_match()
    first = await engine.finish_match(match["match_id"], users.alice, final(users.alice, 8, users.bob, 1))
    second = await engine.finish_match(match["match_id"], users.bob, final(users.alice, 0, users.bob, 8))

    assert second.already_finalized is True
    assert second.payout == first.payout
    assert second.commission == first.commission
    assert second.match["winner_id"] == users.alice
    assert second.match["scores"] == first.match["scores"]

    entries = await ledger_for(match["match_id"])
    assert len(of_type(entries, TransactionType.PAYOUT)) == 1
    assert len(of_type(entries, TransactionType.FEE)) == 1
    assert (await fetch_user(users.alice)).total_wins == 1


async def test_finish_race_lost_returns_recorded_outcome(engine, users, start_match, mocker,
                                                         fetch_user, ledger_for):
    """
    Una segunda llamada que leyó la partida como ongoing pierde el
    compare-and-swap y devuelve el resultado de la primera.
    """
    match = await start_match()
    first = await engine.finish_match(match["match_id"], users.alice, final(users.alice, 8, users.bob, 2))

    real_get = MatchRepository.get
    calls = []

    async def stale_get(self, match_id):
        current = await real_get(self, match_id)
        calls.append(match_id)
        if len(calls) > 1:
            return current
        return Match(
            id=current.id,
            challenger_id=current.challenger_id,
            opponent_id=current.opponent_id,
            status=MatchStatus.ONGOING,
            entry_fee=current.entry_fee,
            challenger_score=0,
            opponent_score=0,
        )

    mocker.patch.object(MatchRepository, "get", stale_get)
    second = await engine.finish_match(match["match_id"], users.bob, final(users.alice, 2, users.bob, 8))

    assert second.already_finalized is True
    assert second.match["winner_id"] == users.alice
    assert second.payout == first.payout
    assert len(of_type(await ledger_for(match["match_id"]), TransactionType.PAYOUT)) == 1
    assert (await fetch_user(users.bob)).available_balance == Decimal("1000.00")


async def test_finish_pending_is_rejected(engine, users, ledger_for):
    match = await engine.create_challenge(users.alice, users.bob, 100)
    with pytest.raises(ConflictError):
        await engine.finish_match(match["match_id"], users.alice, final(users.alice, 8, users.bob, 0))
    assert (await engine.get_match(match["match_id"]))["status"] == "pending"
    assert await ledger_for(match["match_id"]) == []


async def test_finish_winner_must_be_participant(engine, users, start_match, ledger_for):
    match = await start_match()
    with pytest.raises(ValidationError):
        await engine.finish_match(match["match_id"], users.carol, final(users.alice, 8, users.bob, 0))

    state = await engine.get_match(match["match_id"])
    assert state["status"] == "ongoing"
    assert state["winner_id"] is None
    assert of_type(await ledger_for(match["match_id"]), TransactionType.PAYOUT) == []


async def test_finish_requires_both_player_scores(engine, users, start_match):
    match = await start_match()
    with pytest.raises(ValidationError):
        await engine.finish_match(match["match_id"], users.alice, [{"user_id": users.alice, "score": 8}])
    with pytest.raises(ValidationError):
        await engine.finish_match(match["match_id"], users.alice, final(users.alice, 8, users.carol, 1))


async def test_finish_by_outsider(engine, users, start_match):
    match = await start_match()
    with pytest.raises(AuthorizationError):
        await engine.finish_match(
            match["match_id"], users.alice, final(users.alice, 8, users.bob, 1), requested_by=users.carol
        )


async def test_finish_unknown_match(engine, users):
    with pytest.raises(NotFoundError):
        await engine.finish_match(
            "12345678-1234-5678-1234-567812345678", users.alice, final(users.alice, 8, users.bob, 1)
        )


async def test_storage_failure_rolls_back_everything(engine, users, start_match, mocker,
                                                     fetch_user, ledger_for):
    match = await start_match()
    real_append = LedgerRepository.append

    async def failing_append(self, user_id, match_id, transaction_type, amount, meta=None):
        if transaction_type == TransactionType.FEE:
            raise OperationalError("INSERT INTO transactions", {}, Exception("disk I/O error"))
        return await real_append(self, user_id, match_id, transaction_type, amount, meta)

    mocker.patch.object(LedgerRepository, "append", failing_append)

    with pytest.raises(StorageError) as excinfo:
        await engine.finish_match(match["match_id"], users.alice, final(users.alice, 8, users.bob, 1))
    assert "Funds safe" in excinfo.value.detail

    state = await engine.get_match(match["match_id"])
    assert state["status"] == "ongoing"
    assert state["winner_id"] is None
    alice = await fetch_user(users.alice)
    assert alice.available_balance == Decimal("1000.00")
    assert alice.total_wins == 0
    assert of_type(await ledger_for(match["match_id"]), TransactionType.PAYOUT) == []


async def test_zero_fee_match(engine, users, start_match, fetch_user, ledger_for):
    match = await start_match(entry_fee=0)
    result = await engine.finish_match(match["match_id"], users.bob, final(users.alice, 1, users.bob, 8))

    assert result.payout == Decimal("0.00")
    assert (await fetch_user(users.bob)).available_balance == Decimal("1000.00")
    assert (await fetch_user(users.bob)).total_wins == 1
    assert len(await ledger_for(match["match_id"])) == 2


# =============================================================================
# Cancelación
# =============================================================================

async def test_cancel_ongoing_refunds_entry_fee(engine, users, start_match, publisher, fetch_user, ledger_for):
    match = await start_match(entry_fee=50)
    result = await engine.cancel_match(match["match_id"], requested_by=users.alice)

    assert result.match["status"] == "cancelled"
    assert result.refunds == {users.alice: "50.00", users.bob: "50.00"}
    assert (await fetch_user(users.alice)).available_balance == Decimal("1050.00")
    assert (await fetch_user(users.bob)).available_balance == Decimal("1050.00")

    refunds = of_type(await ledger_for(match["match_id"]), TransactionType.REFUND)
    assert sorted(str(e.user_id) for e in refunds) == sorted([users.alice, users.bob])
    assert all(e.amount == Decimal("50.00") for e in refunds)
    assert publisher.named(Events.MATCH_CANCELLED)


async def test_cancel_pending_refunds_each_player(engine, users, fetch_user, ledger_for):
    match = await engine.create_challenge(users.alice, users.bob, 50)
    result = await engine.cancel_match(match["match_id"], requested_by=users.alice)

    assert result.match["status"] == "cancelled"
    assert result.refunds == {users.alice: "50.00", users.bob: "50.00"}
    assert (await fetch_user(users.alice)).available_balance == Decimal("1050.00")
    assert (await fetch_user(users.bob)).available_balance == Decimal("1050.00")
    assert len(of_type(await ledger_for(match["match_id"]), TransactionType.REFUND)) == 2


async def test_cancel_is_idempotent(engine, users, start_match, fetch_user, ledger_for):
    match = await start_match(entry_fee=50)
    await engine.cancel_match(match["match_id"], requested_by=users.alice)
    again = await engine.cancel_match(match["match_id"], requested_by=users.bob)

    assert again.already_finalized is True
    assert len(of_type(await ledger_for(match["match_id"]), TransactionType.REFUND)) == 2
    assert (await fetch_user(users.alice)).available_balance == Decimal("1050.00")


async def test_cancel_finished_match_is_noop(engine, users, start_match, fetch_user):
    match = await start_match()
    await engine.finish_match(match["match_id"], users.alice, final(users.alice, 8, users.bob, 1))
    result = await engine.cancel_match(match["match_id"], requested_by=users.bob)

    assert result.already_finalized is True
    assert result.match["status"] == "finished"
    assert (await fetch_user(users.alice)).available_balance == Decimal("1180.00")


async def test_cancel_by_outsider(engine, users, start_match):
    match = await start_match()
    with pytest.raises(AuthorizationError):
        await engine.cancel_match(match["match_id"], requested_by=users.carol)


async def test_force_cancel_skips_participant_check(engine, users, start_match):
    match = await start_match()
    result = await engine.force_cancel(match["match_id"], reason="stale")
    assert result.match["cancellation_reason"] == "stale"
    assert set(result.refunds) == {users.alice, users.bob}


# =============================================================================
# Marcador
# =============================================================================

async def test_submit_score_persists_and_broadcasts(engine, users, start_match, publisher):
    match = await start_match()
    outcome = await engine.submit_score(match["match_id"], users.bob, [
        {"userId": users.alice, "points": 3},
        {"user": users.bob, "value": "2"},
        {"id": users.alice, "score": 4},
    ])

    assert outcome.accepted is True
    assert outcome.settlement is None
    assert outcome.state.scores == final(users.alice, 4, users.bob, 2)
    assert outcome.state.confirmed_by == users.bob

    updates = publisher.named(Events.SCORE_UPDATED)
    assert ("match", match["match_id"]) in {(k, t) for k, t, _, _ in updates}
    assert {t for k, t, _, _ in updates if k == "user"} == {users.alice, users.bob}


async def test_submit_score_auto_win(engine, users, start_match, publisher, fetch_user):
    match = await start_match(entry_fee=100)
    outcome = await engine.submit_score(
        match["match_id"], users.alice, final(users.alice, 8, users.bob, 5)
    )

    assert outcome.settlement is not None
    assert outcome.settlement.match["status"] == "finished"
    assert outcome.settlement.match["winner_id"] == users.alice
    assert outcome.settlement.match["finish_source"] == "auto"
    assert outcome.settlement.payout == Decimal("180.00")
    assert outcome.settlement.commission == Decimal("20.00")
    assert outcome.state.status == "finished"
    assert (await fetch_user(users.alice)).available_balance == Decimal("1180.00")
    assert publisher.named(Events.MATCH_RESULT)


async def test_submit_score_tie_at_threshold_keeps_playing(engine, users, start_match):
    match = await start_match()
    outcome = await engine.submit_score(match["match_id"], users.alice, final(users.alice, 8, users.bob, 8))
    assert outcome.settlement is None
    assert outcome.state.status == "ongoing"


async def test_submit_score_promotes_pending(engine, users, fetch_user, ledger_for):
    match = await engine.create_challenge(users.alice, users.bob, 10)
    outcome = await engine.submit_score(match["match_id"], users.alice, final(users.alice, 1, users.bob, 0))

    assert outcome.accepted is True
    assert outcome.state.status == "ongoing"
    assert (await fetch_user(users.bob)).available_balance == Decimal("1000.00")
    assert await ledger_for(match["match_id"]) == []


async def test_submit_score_on_terminal_match_is_ignored(engine, users, start_match):
    match = await start_match()
    await engine.finish_match(match["match_id"], users.alice, final(users.alice, 8, users.bob, 2))

    outcome = await engine.submit_score(match["match_id"], users.bob, final(users.alice, 0, users.bob, 9))
    assert outcome.accepted is False
    assert outcome.state.status == "finished"
    assert outcome.state.scores == final(users.alice, 8, users.bob, 2)


async def test_submit_score_needs_two_players(engine, users, start_match):
    match = await start_match()
    with pytest.raises(ValidationError):
        await engine.submit_score(match["match_id"], users.alice, [{"user_id": users.alice, "score": 3}])
    with pytest.raises(ValidationError):
        await engine.submit_score(match["match_id"], users.alice, "garbage")


async def test_submit_score_never_adds_participants(engine, users, start_match):
    match = await start_match()
    with pytest.raises(ValidationError):
        await engine.submit_score(match["match_id"], users.alice, final(users.alice, 3, users.carol, 1))
    assert (await engine.get_match(match["match_id"]))["players"] == [users.alice, users.bob]


async def test_submit_score_by_outsider(engine, users, start_match):
    match = await start_match()
    with pytest.raises(AuthorizationError):
        await engine.submit_score(match["match_id"], users.carol, final(users.alice, 3, users.bob, 1))


# =============================================================================
# Operador y lecturas
# =============================================================================

async def test_audit_after_settlement(engine, users, start_match):
    match = await start_match()
    await engine.finish_match(match["match_id"], users.alice, final(users.alice, 8, users.bob, 1))
    report = await engine.audit_match(match["match_id"])

    assert report["integrity_status"] == "OK"
    assert report["total_wager"] == "200.00"
    assert report["payout"] == "180.00"
    assert report["commission"] == "20.00"


async def test_audit_after_pending_cancel(engine, users):
    match = await engine.create_challenge(users.alice, users.bob, 100)
    await engine.cancel_match(match["match_id"], requested_by=users.bob)
    report = await engine.audit_match(match["match_id"])

    assert report["integrity_status"] == "OK"
    assert report["refunds"] == "200.00"


async def test_list_stale_matches(engine, users, start_match):
    match = await start_match()
    assert await engine.list_stale_matches(timedelta(hours=1)) == []
    stale = await engine.list_stale_matches(timedelta(seconds=-60))
    assert [m["match_id"] for m in stale] == [match["match_id"]]


async def test_wallet_and_history(engine, users, start_match):
    match = await start_match()
    await engine.finish_match(match["match_id"], users.alice, final(users.alice, 8, users.bob, 1))

    wallet = await engine.get_wallet(users.alice)
    assert wallet["available_balance"] == "1180.00"
    assert wallet["total_wins"] == 1

    entries = await engine.get_ledger_entries(users.alice)
    assert {e["type"] for e in entries} == {"payout", "fee"}

    history = await engine.get_user_matches(users.bob)
    assert [m["match_id"] for m in history] == [match["match_id"]]
