import time

import pytest

from telemed.errors import InvalidCallState
from telemed.realtime.calls import (
    END_INACTIVE,
    END_NO_ANSWER,
    END_PEER_DISCONNECTED,
    INVITE_GLARE_LOST,
    INVITE_GLARE_WON,
    INVITE_NEW,
    INVITE_RENEGOTIATE,
    STATE_ANSWERED,
    CallRegistry,
    glare_winner,
)
from telemed.utils.auth import AuthenticatedSender

PATIENT = AuthenticatedSender(role="user", id=1)
DOCTOR = AuthenticatedSender(role="doctor", id=2)


class Ticker:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def named(received, name):
    return [r["args"][0] for r in received if r["name"] == name]


@pytest.fixture
def ticker():
    return Ticker()


@pytest.fixture
def calls(ticker):
    return CallRegistry(invite_timeout=45, idle_timeout=600, disconnect_grace=10, clock=ticker)


# =========================
# CallRegistry
# =========================
def test_invite_then_answer(calls):
    session, outcome = calls.invite(7, PATIENT, DOCTOR)
    assert outcome == INVITE_NEW
    assert session.initiator == PATIENT

    _, outcome = calls.invite(7, PATIENT, DOCTOR)
    assert outcome == INVITE_RENEGOTIATE

    with pytest.raises(InvalidCallState):
        calls.answer(7, PATIENT)
    assert calls.answer(7, DOCTOR).state == STATE_ANSWERED

    with pytest.raises(InvalidCallState):
        calls.invite(7, AuthenticatedSender(role="user", id=99), DOCTOR)


def test_reoffer_after_answer_is_renegotiation(calls):
    calls.invite(7, PATIENT, DOCTOR)
    calls.answer(7, DOCTOR)

    # ICE restart dari sisi callee
    session, outcome = calls.invite(7, DOCTOR, PATIENT)
    assert outcome == INVITE_RENEGOTIATE
    assert session.state == STATE_ANSWERED
    assert session.initiator == PATIENT

    with pytest.raises(InvalidCallState):
        calls.answer(7, DOCTOR)
    assert calls.answer(7, PATIENT).renegotiating is None
    with pytest.raises(InvalidCallState):
        calls.answer(7, PATIENT)


def test_glare_is_resolved_deterministically(calls):
    assert glare_winner(PATIENT, DOCTOR) == DOCTOR
    assert glare_winner(DOCTOR, PATIENT) == DOCTOR

    calls.invite(7, PATIENT, DOCTOR)
    session, outcome = calls.invite(7, DOCTOR, PATIENT)
    assert outcome == INVITE_GLARE_WON
    assert session.initiator == DOCTOR
    assert session.callee == PATIENT

    calls.end(7)
    calls.invite(8, DOCTOR, PATIENT)
    session, outcome = calls.invite(8, PATIENT, DOCTOR)
    assert outcome == INVITE_GLARE_LOST
    assert session.initiator == DOCTOR


def test_unanswered_invite_times_out(calls, ticker):
    calls.invite(7, PATIENT, DOCTOR)

    ticker.now += 44
    assert calls.reap() == []
    ticker.now += 1
    [(session, reason)] = calls.reap()
    assert reason == END_NO_ANSWER
    assert session.conversation_id == 7
    assert len(calls) == 0


def test_idle_answered_call_times_out(calls, ticker):
    calls.invite(7, PATIENT, DOCTOR)
    calls.answer(7, DOCTOR)

    ticker.now += 500
    calls.touch(7, PATIENT)
    ticker.now += 500
    assert calls.reap() == []
    ticker.now += 100
    assert [reason for _, reason in calls.reap()] == [END_INACTIVE]


def test_dropped_participant_gets_grace_period(calls, ticker):
    calls.invite(7, PATIENT, DOCTOR)
    calls.answer(7, DOCTOR)

    calls.mark_dropped(PATIENT.channel)
    ticker.now += 5
    calls.mark_returned(PATIENT.channel)
    ticker.now += 20
    assert calls.reap() == []

    calls.mark_dropped(PATIENT.channel)
    ticker.now += 10
    assert [reason for _, reason in calls.reap()] == [END_PEER_DISCONNECTED]


def test_touch_requires_participant(calls):
    calls.invite(7, PATIENT, DOCTOR)
    with pytest.raises(InvalidCallState):
        calls.touch(7, AuthenticatedSender(role="user", id=99))
    with pytest.raises(InvalidCallState):
        calls.touch(8, PATIENT)


# =========================
# Signaling lewat socket
# =========================
@pytest.fixture
def call_pair(socket_client, conversation):
    patient = socket_client("patient")
    doctor = socket_client("doctor")
    patient.get_received()
    doctor.get_received()
    return patient, doctor


def test_invite_reaches_callee_without_joining_room(call_pair, conversation, users):
    patient, doctor = call_pair

    ack = patient.emit("call_invite", {"conversationId": conversation.id, "offer": {"sdp": "v=0"}}, callback=True)
    assert ack == {"ok": True, "outcome": INVITE_NEW}

    invites = named(doctor.get_received(), "call_invite")
    assert invites == [{
        "conversationId": conversation.id,
        "offer": {"sdp": "v=0"},
        "from": {"id": users["patient"].id, "type": "user"},
    }]
    assert named(patient.get_received(), "call_invite") == []


def test_full_call_flow(call_pair, conversation, realtime):
    patient, doctor = call_pair
    patient.emit("call_invite", {"conversationId": conversation.id, "offer": {"sdp": "offer"}}, callback=True)
    doctor.emit("call_answer", {"conversationId": conversation.id, "answer": {"sdp": "answer"}}, callback=True)

    answers = named(patient.get_received(), "call_answer")
    assert answers[0]["answer"] == {"sdp": "answer"}

    patient.emit("call_candidate", {"conversationId": conversation.id, "candidate": {"c": 1}}, callback=True)
    doctor_received = doctor.get_received()
    assert named(doctor_received, "call_candidate")[0]["candidate"] == {"c": 1}

    doctor.emit("call_end", {"conversationId": conversation.id, "reason": "hangup"}, callback=True)
    ended = named(patient.get_received(), "call_end")
    assert ended[0]["reason"] == "hangup"
    assert len(realtime.calls) == 0


def test_renegotiation_during_call(call_pair, conversation, users):
    patient, doctor = call_pair
    patient.emit("call_invite", {"conversationId": conversation.id, "offer": {"sdp": "offer"}}, callback=True)
    doctor.emit("call_answer", {"conversationId": conversation.id, "answer": {"sdp": "answer"}}, callback=True)
    patient.get_received()

    ack = doctor.emit("call_invite", {"conversationId": conversation.id, "offer": {"sdp": "restart"}}, callback=True)
    assert ack == {"ok": True, "outcome": INVITE_RENEGOTIATE}
    reoffer = named(patient.get_received(), "call_invite")
    assert reoffer[0]["offer"] == {"sdp": "restart"}
    assert reoffer[0]["from"] == {"id": users["doctor"].id, "type": "doctor"}

    ack = patient.emit("call_answer", {"conversationId": conversation.id, "answer": {"sdp": "re-answer"}}, callback=True)
    assert ack["ok"] is True
    answers = named(doctor.get_received(), "call_answer")
    assert answers[-1]["answer"] == {"sdp": "re-answer"}


def test_outsider_cannot_signal(socket_client, call_pair, conversation):
    patient, doctor = call_pair
    outsider = socket_client("other_doctor")

    ack = outsider.emit("call_invite", {"conversationId": conversation.id, "offer": {}}, callback=True)
    assert ack["ok"] is False
    assert named(outsider.get_received(), "call_error")[0]["code"] == "forbidden"
    assert named(doctor.get_received(), "call_invite") == []
    assert named(patient.get_received(), "call_invite") == []


def test_invite_target_must_be_the_peer(call_pair, conversation, users):
    patient, doctor = call_pair
    ack = patient.emit("call_invite", {
        "conversationId": conversation.id,
        "offer": {},
        "target": {"id": users["other_doctor"].id, "type": "doctor"},
    }, callback=True)
    assert ack["code"] == "forbidden"
    assert named(doctor.get_received(), "call_invite") == []


def test_answer_without_ringing_call_is_error(call_pair, conversation):
    _, doctor = call_pair
    ack = doctor.emit("call_answer", {"conversationId": conversation.id, "answer": {}}, callback=True)
    assert ack["ok"] is False
    assert named(doctor.get_received(), "call_error")[0]["code"] == "invalid_call_state"


def test_simultaneous_invites(call_pair, conversation):
    patient, doctor = call_pair

    patient.emit("call_invite", {"conversationId": conversation.id, "offer": {"sdp": "p"}}, callback=True)
    ack = doctor.emit("call_invite", {"conversationId": conversation.id, "offer": {"sdp": "d"}}, callback=True)
    assert ack["outcome"] == INVITE_GLARE_WON

    patient_received = patient.get_received()
    assert named(patient_received, "call_invite")[0]["offer"] == {"sdp": "d"}
    assert len(named(patient_received, "call_glare")) == 1


def test_glare_loser_is_told_to_answer(call_pair, conversation, users):
    patient, doctor = call_pair

    doctor.emit("call_invite", {"conversationId": conversation.id, "offer": {"sdp": "d"}}, callback=True)
    doctor.get_received()
    ack = patient.emit("call_invite", {"conversationId": conversation.id, "offer": {"sdp": "p"}}, callback=True)
    assert ack["outcome"] == INVITE_GLARE_LOST

    glare = named(patient.get_received(), "call_glare")
    assert glare[0]["initiator"] == {"id": users["doctor"].id, "type": "doctor"}
    assert named(doctor.get_received(), "call_invite") == []


def test_sweeper_ends_unanswered_invite(call_pair, conversation, realtime):
    patient, doctor = call_pair
    patient.emit("call_invite", {"conversationId": conversation.id, "offer": {}}, callback=True)
    doctor.get_received()

    finished = realtime.sweep_calls(now=time.monotonic() + 3600 * 24)
    assert [reason for _, reason in finished] == [END_NO_ANSWER]
    for sc in (patient, doctor):
        ended = named(sc.get_received(), "call_end")
        assert ended == [{"conversationId": conversation.id, "reason": END_NO_ANSWER, "from": None}]


def test_disconnect_mid_call_ends_after_grace(call_pair, conversation, realtime):
    patient, doctor = call_pair
    patient.emit("call_invite", {"conversationId": conversation.id, "offer": {}}, callback=True)
    doctor.emit("call_answer", {"conversationId": conversation.id, "answer": {}}, callback=True)
    doctor.get_received()

    patient.disconnect()
    assert realtime.sweep_calls(now=time.monotonic() + 1) == []

    grace = realtime.calls.disconnect_grace
    finished = realtime.sweep_calls(now=time.monotonic() + grace + 1)
    assert [reason for _, reason in finished] == [END_PEER_DISCONNECTED]
    ended = named(doctor.get_received(), "call_end")
    assert ended[0]["reason"] == END_PEER_DISCONNECTED


def test_reconnect_within_grace_keeps_call(socket_client, call_pair, conversation, realtime):
    patient, doctor = call_pair
    patient.emit("call_invite", {"conversationId": conversation.id, "offer": {}}, callback=True)
    doctor.emit("call_answer", {"conversationId": conversation.id, "answer": {}}, callback=True)

    patient.disconnect()
    socket_client("patient")

    grace = realtime.calls.disconnect_grace
    assert realtime.sweep_calls(now=time.monotonic() + grace + 1) == []
    assert len(realtime.calls) == 1
