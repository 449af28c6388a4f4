import asyncio

import pytest

from smartqueue.models.domain import MessageKind
from smartqueue.services.container import build_services
from smartqueue.services.message_sinks import MessageDeliveryError, MessageSink


class FailingSink(MessageSink):
    def __init__(self):
        self.attempts = 0

    async def send(self, recipient, kind, payload):
        self.attempts += 1
        raise MessageDeliveryError("smtp down")


class SlowSink(MessageSink):
    async def send(self, recipient, kind, payload):
        await asyncio.sleep(1)


async def _fill(services, clinic, clock, register, names):
    tokens = []
    for name in names:
        party = await register(name)
        tokens.append(await services.orchestrator.generate(party.id, point_id=clinic.point.id))
        clock.advance(seconds=1)
    await services.dispatcher.drain()
    return tokens


@pytest.mark.asyncio
async def test_confirmation_payload(services, clinic, sink, register):
    party = await register("Asha")
    token = await services.orchestrator.generate(party.id, point_id=clinic.point.id)
    await services.dispatcher.drain()

    [(recipient, payload)] = sink.of_kind(MessageKind.CONFIRMATION)
    assert recipient == "asha@x"
    assert payload == {
        "token_number": token.token_number,
        "group_name": "Cardiology",
        "point_name": "Dr. Rao",
        "service_date": "2025-03-14",
        "generated_at": token.generated_at.isoformat(),
        "priority": "NORMAL",
        "position": 1,
        "estimated_wait_minutes": 0,
    }
    assert services.notifier.last_position(token.id) == 1


@pytest.mark.asyncio
async def test_group_level_token_is_confirmed_without_position(services, clinic, sink, register):
    party = await register("Asha")
    token = await services.orchestrator.generate(party.id, group_id=clinic.group.id)
    await services.dispatcher.drain()

    [(_, payload)] = sink.of_kind(MessageKind.CONFIRMATION)
    assert payload["point_name"] == "Unassigned"
    assert payload["position"] == 0
    assert services.notifier.last_position(token.id) is None


@pytest.mark.asyncio
async def test_advancement_flags_almost_your_turn(services, clinic, clock, sink, register):
    tokens = await _fill(services, clinic, clock, register, ["A", "B", "C", "D", "F"])
    sink.clear()

    await services.orchestrator.cancel(tokens[0].id)
    await services.dispatcher.drain()

    advancements = dict(sink.of_kind(MessageKind.ADVANCEMENT))
    assert set(advancements) == {"b@x", "c@x", "d@x", "f@x"}
    assert advancements["d@x"]["position"] == 3
    assert advancements["d@x"]["almost_your_turn"] is True
    assert advancements["f@x"]["position"] == 4
    assert advancements["f@x"]["almost_your_turn"] is False
    assert advancements["f@x"]["estimated_wait_minutes"] == 30
    assert services.notifier.last_position(tokens[0].id) is None


@pytest.mark.asyncio
async def test_unchanged_positions_are_not_messaged(services, clinic, clock, sink, register):
    await _fill(services, clinic, clock, register, ["A", "B"])
    sink.clear()

    await services.notifier.on_queue_advanced(clinic.point.id, clock.today())

    assert sink.messages == []


@pytest.mark.asyncio
async def test_first_event_after_restart_seeds_silently(services, clinic, clock, sink, register):
    tokens = await _fill(services, clinic, clock, register, ["A", "B", "C"])
    services.notifier.positions.clear()
    sink.clear()

    await services.orchestrator.cancel(tokens[0].id)
    await services.dispatcher.drain()
    assert sink.of_kind(MessageKind.ADVANCEMENT) == []
    assert services.notifier.last_position(tokens[2].id) == 2

    await services.orchestrator.cancel(tokens[1].id)
    await services.dispatcher.drain()
    [(recipient, payload)] = sink.of_kind(MessageKind.ADVANCEMENT)
    assert recipient == "c@x"
    assert (payload["previous_position"], payload["position"]) == (2, 1)


@pytest.mark.asyncio
async def test_nothing_is_sent_when_messaging_disabled(
    test_settings, repository, clock, sink, clinic
):
    settings = test_settings.model_copy(update={"EMAIL_ENABLED": False})
    services = build_services(settings, repository=repository, clock=clock, sink=sink)
    party, _ = await services.parties.find_or_register(
        name="Asha", phone="+911", email="asha@x"
    )

    token = await services.orchestrator.generate(party.id, point_id=clinic.point.id)
    await services.dispatcher.drain()

    assert sink.messages == []
    assert services.notifier.last_position(token.id) == 1


@pytest.mark.asyncio
async def test_parties_without_email_are_skipped(services, clinic, sink, register):
    party = await register("Asha", email=None)

    await services.orchestrator.generate(party.id, point_id=clinic.point.id)
    await services.dispatcher.drain()

    assert sink.messages == []


@pytest.mark.asyncio
async def test_sink_failure_does_not_reach_the_caller(
    test_settings, repository, clock, clinic
):
    failing = FailingSink()
    services = build_services(test_settings, repository=repository, clock=clock, sink=failing)
    party, _ = await services.parties.find_or_register(
        name="Asha", phone="+911", email="asha@x"
    )

    token = await services.orchestrator.generate(party.id, point_id=clinic.point.id)
    await services.dispatcher.drain()
    called = await services.orchestrator.call_next(clinic.point.id)
    await services.dispatcher.drain()

    assert called.id == token.id
    assert failing.attempts == 2


@pytest.mark.asyncio
async def test_slow_sink_times_out(test_settings, repository, clock, clinic):
    settings = test_settings.model_copy(update={"NOTIFIER_SEND_TIMEOUT_S": 0.01})
    services = build_services(settings, repository=repository, clock=clock, sink=SlowSink())
    party, _ = await services.parties.find_or_register(
        name="Asha", phone="+911", email="asha@x"
    )

    token = await services.orchestrator.generate(party.id, point_id=clinic.point.id)
    await asyncio.wait_for(services.dispatcher.drain(), timeout=0.5)

    assert services.notifier.last_position(token.id) == 1


@pytest.mark.asyncio
async def test_messages_follow_commit_order(services, clinic, sink, register):
    party = await register("Asha")
    await services.orchestrator.generate(party.id, point_id=clinic.point.id)
    await services.orchestrator.call_next(clinic.point.id)
    await services.dispatcher.drain()

    assert sink.kinds_for("asha@x") == [MessageKind.CONFIRMATION, MessageKind.TURN_CALLED]
