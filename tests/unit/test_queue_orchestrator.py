"""
End-to-end behaviour of the queue operations against the in-memory store.
"""

import asyncio

import pytest

from smartqueue.core.errors import (
    AlreadyServingError,
    CapacityExceededError,
    ContentionError,
    EmptyQueueError,
    InvalidPriorityError,
    InvalidStateError,
    NotFoundError,
    ServicePointUnavailableError,
)
from smartqueue.core.priority import REPRIORITIZE_REASON
from smartqueue.models.domain import MessageKind, Priority, TokenStatus
from smartqueue.repositories.base import TokenNumberConflictError


async def _waiting_numbers(services, point_id):
    return [t.token_number for t in await services.orchestrator.waiting_queue(point_id)]


@pytest.mark.asyncio
async def test_priority_arrival_pushes_normal_tokens_back(services, clinic, clock, sink, register):
    orchestrator = services.orchestrator
    a = await register("A")
    b = await register("B")
    c = await register("C")
    e = await register("E")

    token_a = await orchestrator.generate(a.id, point_id=clinic.point.id)
    clock.advance(seconds=1)
    token_b = await orchestrator.generate(b.id, point_id=clinic.point.id)
    clock.advance(seconds=1)
    token_c = await orchestrator.generate(c.id, point_id=clinic.point.id)
    clock.advance(seconds=1)
    token_e = await orchestrator.generate(e.id, point_id=clinic.point.id, priority="EMERGENCY")
    await services.dispatcher.drain()

    assert await _waiting_numbers(services, clinic.point.id) == [
        token_e.token_number,
        token_a.token_number,
        token_b.token_number,
        token_c.token_number,
    ]
    assert (await orchestrator.position(token_e.id)).position == 1

    confirmations = dict(sink.of_kind(MessageKind.CONFIRMATION))
    assert confirmations["e@x"]["position"] == 1
    assert confirmations["e@x"]["priority"] == "EMERGENCY"
    assert confirmations["a@x"]["position"] == 1

    regressions = {r: p for r, p in sink.of_kind(MessageKind.REGRESSION)}
    assert set(regressions) == {"a@x", "b@x", "c@x"}
    assert (regressions["a@x"]["previous_position"], regressions["a@x"]["position"]) == (1, 2)
    assert (regressions["b@x"]["previous_position"], regressions["b@x"]["position"]) == (2, 3)
    assert (regressions["c@x"]["previous_position"], regressions["c@x"]["position"]) == (3, 4)
    assert "Emergency" in regressions["a@x"]["cause_description"]
    assert regressions["b@x"]["estimated_wait_minutes"] == 20


@pytest.mark.asyncio
async def test_completion_moves_everyone_up(services, clinic, clock, sink, register):
    orchestrator = services.orchestrator
    parties = [await register(name) for name in ("A", "B", "C")]
    for party in parties:
        await orchestrator.generate(party.id, point_id=clinic.point.id)
        clock.advance(seconds=1)
    e = await register("E")
    token_e = await orchestrator.generate(e.id, point_id=clinic.point.id, priority="EMERGENCY")
    await services.dispatcher.drain()
    sink.clear()

    called = await orchestrator.call_next(clinic.point.id)
    assert called.id == token_e.id
    assert called.status == TokenStatus.CALLED

    await orchestrator.start_service(token_e.id)
    clock.advance(minutes=12)
    ended = await orchestrator.end_service(token_e.id)
    await services.dispatcher.drain()

    assert ended.status == TokenStatus.COMPLETED
    assert sink.kinds_for("e@x") == [MessageKind.TURN_CALLED, MessageKind.COMPLETED]

    advancements = {r: p for r, p in sink.of_kind(MessageKind.ADVANCEMENT)}
    assert (advancements["a@x"]["previous_position"], advancements["a@x"]["position"]) == (2, 1)
    assert (advancements["b@x"]["previous_position"], advancements["b@x"]["position"]) == (3, 2)
    assert (advancements["c@x"]["previous_position"], advancements["c@x"]["position"]) == (4, 3)
    assert advancements["a@x"]["almost_your_turn"] is True
    # Average now comes from the one 12-minute consultation
    assert advancements["c@x"]["estimated_wait_minutes"] == 24
    assert not sink.of_kind(MessageKind.REGRESSION)


@pytest.mark.asyncio
async def test_turn_called_message_names_room(services, clinic, sink, register):
    party = await register("A")
    await services.orchestrator.generate(party.id, point_id=clinic.point.id)
    await services.orchestrator.call_next(clinic.point.id)
    await services.dispatcher.drain()

    [(recipient, payload)] = sink.of_kind(MessageKind.TURN_CALLED)
    assert recipient == "a@x"
    assert payload["point_name"] == "Dr. Rao"
    assert payload["room_label"] == "101"


@pytest.mark.asyncio
async def test_skip_moves_token_behind_equal_priority_peer(services, clinic, clock, sink, register):
    orchestrator = services.orchestrator
    b = await register("B")
    d = await register("D")
    token_b = await orchestrator.generate(b.id, point_id=clinic.point.id)
    clock.advance(seconds=5)
    token_d = await orchestrator.generate(d.id, point_id=clinic.point.id)
    await services.dispatcher.drain()
    sink.clear()

    await orchestrator.call_next(clinic.point.id)
    skipped = await orchestrator.skip(token_b.id)
    await services.dispatcher.drain()

    assert skipped.status == TokenStatus.WAITING
    assert skipped.called_at is None
    assert skipped.priority_score == 0
    assert skipped.skip_count == 1
    assert await _waiting_numbers(services, clinic.point.id) == [
        token_d.token_number,
        token_b.token_number,
    ]
    assert [r for r, _ in sink.of_kind(MessageKind.ADVANCEMENT)] == ["d@x"]


@pytest.mark.asyncio
async def test_skipped_token_stays_ahead_of_lower_priority(services, clinic, clock, register):
    orchestrator = services.orchestrator
    vip = await register("V")
    normal = await register("N")
    token_vip = await orchestrator.generate(vip.id, point_id=clinic.point.id, priority="VIP")
    clock.advance(seconds=1)
    token_normal = await orchestrator.generate(normal.id, point_id=clinic.point.id)

    await orchestrator.call_next(clinic.point.id)
    await orchestrator.skip(token_vip.id)

    assert await _waiting_numbers(services, clinic.point.id) == [
        token_vip.token_number,
        token_normal.token_number,
    ]


@pytest.mark.asyncio
async def test_expectant_trait_overrides_requested_vip(services, clinic, register):
    q = await register("Q", is_expectant=True)

    token = await services.orchestrator.generate(q.id, point_id=clinic.point.id, priority="VIP")
    assert token.priority == Priority.EXPECTANT
    assert token.priority_score == 800

    emergency = await services.orchestrator.generate(
        q.id, point_id=clinic.point.id, priority="EMERGENCY"
    )
    assert emergency.priority == Priority.EMERGENCY
    assert emergency.priority_score == 1000


@pytest.mark.asyncio
async def test_senior_from_date_of_birth(services, clinic, clock, register):
    born = clock.today().replace(year=clock.today().year - 60)
    senior = await register("S", date_of_birth=born)

    token = await services.orchestrator.generate(senior.id, point_id=clinic.point.id)
    assert token.priority == Priority.SENIOR
    assert token.priority_score == 600


@pytest.mark.asyncio
async def test_capacity_counts_cancelled_tokens(services, repository, clinic, register):
    point = repository.add_service_point("Counter 1", clinic.group.id, daily_capacity=2)
    party = await register("A")

    first = await services.orchestrator.generate(party.id, point_id=point.id)
    await services.orchestrator.generate(party.id, point_id=point.id)
    with pytest.raises(CapacityExceededError):
        await services.orchestrator.generate(party.id, point_id=point.id)

    await services.orchestrator.cancel(first.id)
    with pytest.raises(CapacityExceededError):
        await services.orchestrator.generate(party.id, point_id=point.id)

    # The rejected attempts consumed no token numbers
    assert await repository.count_group_tokens(clinic.group.id, first.service_date) == 2


@pytest.mark.asyncio
async def test_token_numbers_follow_group_code_and_date(services, clinic, clock, register):
    party = await register("A")
    numbers = []
    for point in (clinic.point, clinic.other_point, clinic.point):
        token = await services.orchestrator.generate(party.id, point_id=point.id)
        numbers.append(token.token_number)
        clock.advance(seconds=1)

    assert numbers == ["CARD-20250314-0001", "CARD-20250314-0002", "CARD-20250314-0003"]


@pytest.mark.asyncio
async def test_numbering_restarts_on_a_new_day(services, clinic, clock, register):
    party = await register("A")
    await services.orchestrator.generate(party.id, point_id=clinic.point.id)
    clock.advance(days=1)

    token = await services.orchestrator.generate(party.id, point_id=clinic.point.id)
    assert token.token_number == "CARD-20250315-0001"


@pytest.mark.asyncio
async def test_concurrent_generation_keeps_numbers_gap_free(services, clinic, register):
    parties = [await register(f"P{i}") for i in range(8)]

    tokens = await asyncio.gather(
        *(services.orchestrator.generate(p.id, point_id=clinic.point.id) for p in parties)
    )

    suffixes = sorted(int(t.token_number.rsplit("-", 1)[1]) for t in tokens)
    assert suffixes == list(range(1, 9))


@pytest.mark.asyncio
async def test_number_collision_is_retried_once(
    services, repository, clinic, register, monkeypatch
):
    party = await register("A")
    original = repository.insert_token
    attempts = {"count": 0}

    async def collide_once(token, *, tx=None):
        attempts["count"] += 1
        if attempts["count"] == 1:
            raise TokenNumberConflictError("taken", operation="insert_token")
        return await original(token, tx=tx)

    monkeypatch.setattr(repository, "insert_token", collide_once)

    token = await services.orchestrator.generate(party.id, point_id=clinic.point.id)
    assert token.token_number == "CARD-20250314-0001"
    assert attempts["count"] == 2


@pytest.mark.asyncio
async def test_two_collisions_raise_contention(services, repository, clinic, register, monkeypatch):
    party = await register("A")
    attempts = {"count": 0}

    async def always_collide(token, *, tx=None):
        attempts["count"] += 1
        raise TokenNumberConflictError("taken", operation="insert_token")

    monkeypatch.setattr(repository, "insert_token", always_collide)

    with pytest.raises(ContentionError):
        await services.orchestrator.generate(party.id, point_id=clinic.point.id)
    assert attempts["count"] == 2
    assert await repository.count_point_tokens(clinic.point.id, services.clock.today()) == 0


@pytest.mark.asyncio
async def test_generate_rejects_unknown_references(services, clinic, register):
    party = await register("A")

    with pytest.raises(NotFoundError):
        await services.orchestrator.generate(999, point_id=clinic.point.id)
    with pytest.raises(NotFoundError):
        await services.orchestrator.generate(party.id, point_id=999)
    with pytest.raises(NotFoundError):
        await services.orchestrator.generate(party.id, group_id=999)
    with pytest.raises(InvalidPriorityError):
        await services.orchestrator.generate(party.id, point_id=clinic.point.id, priority="URGENT")


@pytest.mark.asyncio
async def test_generate_rejects_unavailable_point(services, repository, clinic, register):
    party = await register("A")
    repository.set_point_availability(clinic.point.id, False)

    with pytest.raises(ServicePointUnavailableError):
        await services.orchestrator.generate(party.id, point_id=clinic.point.id)


@pytest.mark.asyncio
async def test_group_level_token_has_no_queue_position(services, clinic, sink, register):
    party = await register("A")

    token = await services.orchestrator.generate(party.id, group_id=clinic.group.id)
    await services.dispatcher.drain()

    assert token.point_id is None
    assert (await services.orchestrator.position(token.id)).position == 0
    [(_, payload)] = sink.of_kind(MessageKind.CONFIRMATION)
    assert payload["point_name"] == "Unassigned"
    assert payload["group_name"] == "Cardiology"


@pytest.mark.asyncio
async def test_call_next_twice_raises_already_serving(services, clinic, register):
    party = await register("A")
    await services.orchestrator.generate(party.id, point_id=clinic.point.id)
    await services.orchestrator.generate(party.id, point_id=clinic.point.id)

    await services.orchestrator.call_next(clinic.point.id)
    with pytest.raises(AlreadyServingError):
        await services.orchestrator.call_next(clinic.point.id)


@pytest.mark.asyncio
async def test_call_next_on_empty_queue(services, clinic):
    with pytest.raises(EmptyQueueError):
        await services.orchestrator.call_next(clinic.point.id)
    with pytest.raises(NotFoundError):
        await services.orchestrator.call_next(999)


@pytest.mark.asyncio
async def test_concurrent_call_next_serves_one_token(services, clinic, register):
    for name in ("A", "B", "C"):
        party = await register(name)
        await services.orchestrator.generate(party.id, point_id=clinic.point.id)

    results = await asyncio.gather(
        *(services.orchestrator.call_next(clinic.point.id) for _ in range(3)),
        return_exceptions=True,
    )

    served = [r for r in results if not isinstance(r, Exception)]
    assert len(served) == 1
    assert all(isinstance(r, AlreadyServingError) for r in results if isinstance(r, Exception))
    point_tokens = await services.repository.list_point_tokens(
        clinic.point.id, services.clock.today()
    )
    serving = [
        t for t in point_tokens if t.status in (TokenStatus.CALLED, TokenStatus.IN_CONSULTATION)
    ]
    assert len(serving) == 1


@pytest.mark.asyncio
async def test_end_service_without_start_stamps_both_times(services, clinic, clock, register):
    party = await register("A")
    token = await services.orchestrator.generate(party.id, point_id=clinic.point.id)
    await services.orchestrator.call_next(clinic.point.id)
    clock.advance(minutes=3)

    ended = await services.orchestrator.end_service(token.id)

    assert ended.consultation_started_at == clock.now()
    assert ended.consultation_ended_at == clock.now()


@pytest.mark.asyncio
async def test_state_preconditions(services, clinic, register):
    party = await register("A")
    token = await services.orchestrator.generate(party.id, point_id=clinic.point.id)

    with pytest.raises(InvalidStateError):
        await services.orchestrator.start_service(token.id)
    with pytest.raises(InvalidStateError):
        await services.orchestrator.mark_no_show(token.id)
    with pytest.raises(InvalidStateError):
        await services.orchestrator.skip(token.id)
    with pytest.raises(InvalidStateError):
        await services.orchestrator.end_service(token.id)

    await services.orchestrator.cancel(token.id)
    with pytest.raises(InvalidStateError):
        await services.orchestrator.cancel(token.id)
    with pytest.raises(InvalidStateError):
        await services.orchestrator.reprioritize(token.id, "VIP")
    with pytest.raises(NotFoundError):
        await services.orchestrator.cancel(999)


@pytest.mark.asyncio
async def test_no_show_advances_queue(services, clinic, clock, sink, register):
    a = await register("A")
    b = await register("B")
    token_a = await services.orchestrator.generate(a.id, point_id=clinic.point.id)
    clock.advance(seconds=1)
    await services.orchestrator.generate(b.id, point_id=clinic.point.id)
    await services.dispatcher.drain()
    sink.clear()

    await services.orchestrator.call_next(clinic.point.id)
    no_show = await services.orchestrator.mark_no_show(token_a.id)
    await services.dispatcher.drain()

    assert no_show.status == TokenStatus.NO_SHOW
    assert no_show.consultation_ended_at is not None
    [(recipient, payload)] = sink.of_kind(MessageKind.ADVANCEMENT)
    assert recipient == "b@x"
    assert payload["position"] == 1
    assert services.notifier.last_position(token_a.id) is None


@pytest.mark.asyncio
async def test_cancel_advances_queue(services, clinic, clock, sink, register):
    a = await register("A")
    b = await register("B")
    token_a = await services.orchestrator.generate(a.id, point_id=clinic.point.id)
    clock.advance(seconds=1)
    await services.orchestrator.generate(b.id, point_id=clinic.point.id)
    await services.dispatcher.drain()
    sink.clear()

    await services.orchestrator.cancel(token_a.id)
    await services.dispatcher.drain()

    assert [r for r, _ in sink.of_kind(MessageKind.ADVANCEMENT)] == ["b@x"]


@pytest.mark.asyncio
async def test_reprioritizing_head_to_normal_swaps_order(services, clinic, clock, sink, register):
    y = await register("Y")
    x = await register("X")
    token_y = await services.orchestrator.generate(y.id, point_id=clinic.point.id)
    clock.advance(seconds=1)
    token_x = await services.orchestrator.generate(x.id, point_id=clinic.point.id, priority="VIP")
    await services.dispatcher.drain()
    assert await _waiting_numbers(services, clinic.point.id) == [
        token_x.token_number,
        token_y.token_number,
    ]
    sink.clear()

    updated = await services.orchestrator.reprioritize(token_x.id, "normal")
    await services.dispatcher.drain()

    assert updated.priority == Priority.NORMAL
    assert updated.priority_score == 0
    assert await _waiting_numbers(services, clinic.point.id) == [
        token_y.token_number,
        token_x.token_number,
    ]
    [(adv_to, adv)] = sink.of_kind(MessageKind.ADVANCEMENT)
    [(reg_to, reg)] = sink.of_kind(MessageKind.REGRESSION)
    assert (adv_to, adv["position"]) == ("y@x", 1)
    assert (reg_to, reg["position"], reg["previous_position"]) == ("x@x", 2, 1)
    assert reg["cause_description"] == REPRIORITIZE_REASON


@pytest.mark.asyncio
async def test_reprioritize_rejects_unknown_priority(services, clinic, register):
    party = await register("A")
    token = await services.orchestrator.generate(party.id, point_id=clinic.point.id)

    with pytest.raises(InvalidPriorityError):
        await services.orchestrator.reprioritize(token.id, "URGENT")
    with pytest.raises(InvalidPriorityError):
        await services.orchestrator.reprioritize(token.id, None)


@pytest.mark.asyncio
async def test_abort_active_cancels_silently(services, clinic, sink, register):
    party = await register("A")
    token = await services.orchestrator.generate(party.id, point_id=clinic.point.id)
    await services.orchestrator.call_next(clinic.point.id)
    await services.orchestrator.start_service(token.id)
    await services.dispatcher.drain()
    sink.clear()

    aborted = await services.orchestrator.abort_active(token.id)
    await services.dispatcher.drain()

    assert aborted.status == TokenStatus.CANCELLED
    assert aborted.consultation_ended_at is not None
    assert sink.messages == []
    assert services.notifier.last_position(token.id) is None
    assert await services.orchestrator.current_serving(clinic.point.id) is None


@pytest.mark.asyncio
async def test_lookup_by_number_round_trip(services, clinic, register):
    party = await register("A")
    token = await services.orchestrator.generate(
        party.id, point_id=clinic.point.id, priority="VIP", notes="wheelchair"
    )

    found = await services.orchestrator.get_token_by_number(token.token_number)

    assert found == token
    assert found.notes == "wheelchair"
    with pytest.raises(NotFoundError):
        await services.orchestrator.get_token_by_number("CARD-20250314-0999")


@pytest.mark.asyncio
async def test_priority_score_always_matches_priority(services, clinic, clock, register):
    orchestrator = services.orchestrator
    tokens = []
    for i, priority in enumerate(["NORMAL", "VIP", "EMERGENCY", "NORMAL"]):
        party = await register(f"P{i}")
        token = await orchestrator.generate(party.id, point_id=clinic.point.id, priority=priority)
        tokens.append(token)
        clock.advance(seconds=1)

    head = await orchestrator.call_next(clinic.point.id)
    await orchestrator.skip(head.id)
    await orchestrator.reprioritize(tokens[0].id, "SENIOR")

    scale = services.orchestrator.scale
    for token in await services.repository.list_point_tokens(clinic.point.id, clock.today()):
        assert token.priority_score == scale.score(token.priority)
