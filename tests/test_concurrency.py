"""Racing writers against a file-backed SQLite database.

Each thread gets its own SQLAlchemy session and connection; the engine opens
every transaction with BEGIN IMMEDIATE, the SQLite counterpart of the
row lock taken on PostgreSQL.
"""
import threading

import pytest

from app.exceptions import ConflictException
from app.models.evaluation import Evaluation
from app.models.training_session import TrainingSession, TranscriptTurn
from app.services import evaluation as evaluation_service
from app.services import simulator, transcripts
from factories import GREETING, make_assignment, make_scenario, make_session_with_turns, make_user, scoring_result


def _run_threads(target, count):
    results, errors = [None] * count, []

    def _wrap(i):
        try:
            results[i] = target(i)
        except Exception as e:  # collected and asserted on by the test
            errors.append(e)

    threads = [threading.Thread(target=_wrap, args=(i,)) for i in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    return results, errors


@pytest.fixture
def seeded(file_db):
    db = file_db()
    supervisor = make_user(db, "supervisor")
    counselor = make_user(db, "counselor")
    scenario = make_scenario(db, supervisor.id)
    assignment_id = make_assignment(db, scenario.id, counselor.id, supervisor.id).id
    db.close()
    return {"counselor": counselor, "supervisor": supervisor, "assignment": assignment_id}


def test_concurrent_appends_keep_turn_order_gapless(file_db, seeded, monkeypatch):
    monkeypatch.setattr(simulator, "generate_initial_greeting", lambda prompt: GREETING)
    db = file_db()
    session_id = transcripts.create_session(db, seeded["assignment"], seeded["counselor"]).id
    db.close()

    writers = 12

    def _append(i):
        db = file_db()
        try:
            return transcripts.append_turn(db, session_id, "user", f"message {i}").turn_order
        finally:
            db.close()

    results, errors = _run_threads(_append, writers)
    assert errors == []

    db = file_db()
    orders = [
        t.turn_order for t in
        db.query(TranscriptTurn).filter_by(session_id=session_id, attempt_number=1).order_by(TranscriptTurn.turn_order)
    ]
    db.close()
    assert orders == list(range(1, writers + 2))
    assert sorted(results) == list(range(2, writers + 2))


def test_concurrent_exchanges_stay_paired(file_db, seeded, monkeypatch):
    monkeypatch.setattr(simulator, "generate_initial_greeting", lambda prompt: GREETING)
    monkeypatch.setattr(simulator, "generate_reply", lambda prompt, history: "reply to " + history[-1]["content"])
    db = file_db()
    session_id = transcripts.create_session(db, seeded["assignment"], seeded["counselor"]).id
    db.close()

    def _exchange(i):
        db = file_db()
        try:
            user_turn, reply = transcripts.send_message(db, session_id, seeded["counselor"], f"message {i}")
            return user_turn.turn_order, reply.turn_order
        finally:
            db.close()

    results, errors = _run_threads(_exchange, 6)
    assert errors == []
    # each exchange occupies two adjacent slots
    assert all(reply == user + 1 for user, reply in results)

    db = file_db()
    turns = db.query(TranscriptTurn).filter_by(session_id=session_id).order_by(TranscriptTurn.turn_order).all()
    db.close()
    assert [t.turn_order for t in turns] == list(range(1, 14))
    for user_turn, reply in zip(turns[1::2], turns[2::2]):
        assert reply.content == "reply to " + user_turn.content


def test_concurrent_evaluate_creates_one_evaluation(file_db, seeded, monkeypatch):
    db = file_db()
    session_id = make_session_with_turns(db, assignment_id=seeded["assignment"], turns=2).id
    db.close()

    # both requests pass the "already evaluated?" check before either writes
    barrier = threading.Barrier(2, timeout=20)

    def _score(*args, **kwargs):
        barrier.wait()
        return scoring_result()
    monkeypatch.setattr(evaluation_service, "score_transcript", _score)

    def _evaluate(i):
        db = file_db()
        try:
            outcome = evaluation_service.evaluate(db, session_id, seeded["counselor"])
            return outcome.evaluation.id, outcome.created
        finally:
            db.close()

    results, errors = _run_threads(_evaluate, 2)
    assert errors == []
    ids = {evaluation_id for evaluation_id, _ in results}
    assert len(ids) == 1
    assert sorted(created for _, created in results) == [False, True]

    db = file_db()
    assert db.query(Evaluation).count() == 1
    assert db.get(TrainingSession, session_id).status == "completed"
    db.close()


def test_concurrent_session_create_has_one_winner(file_db, seeded, monkeypatch):
    barrier = threading.Barrier(2, timeout=20)

    def _greeting(prompt):
        barrier.wait()
        return GREETING
    monkeypatch.setattr(simulator, "generate_initial_greeting", _greeting)

    def _create(i):
        db = file_db()
        try:
            return transcripts.create_session(db, seeded["assignment"], seeded["counselor"]).id
        finally:
            db.close()

    results, errors = _run_threads(_create, 2)
    assert len(errors) == 1
    assert isinstance(errors[0], ConflictException)

    db = file_db()
    sessions = db.query(TrainingSession).all()
    assert len(sessions) == 1
    assert db.query(TranscriptTurn).count() == 1
    db.close()
