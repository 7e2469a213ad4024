import json

from sqlalchemy.exc import OperationalError

from app.exceptions import UpstreamException
from app.models.assignment import Assignment
from app.models.evaluation import Evaluation
from app.models.session_flag import SessionFlag
from app.models.training_session import TrainingSession
from app.services import evaluation as evaluation_service
from app.services import guard
from app.services.ai_scoring import ScoredFlag
from factories import make_session_with_turns


def test_single_turn_is_too_early(client, db_session, login, counselor, assignment, fake_llm):
    session = make_session_with_turns(db_session, assignment_id=assignment.id, turns=1)
    login(counselor)
    resp = client.post(f'/sessions/{session.id}/evaluate')
    assert resp.status_code == 425
    body = resp.json()
    assert body['error'] == 'TOO_EARLY'
    assert body['retryable'] is True
    assert fake_llm['score'] == []


def test_evaluate_completes_session_and_assignment(client, db_session, login, counselor, assignment, fake_llm):
    session = make_session_with_turns(db_session, assignment_id=assignment.id, turns=2)
    login(counselor)
    resp = client.post(f'/sessions/{session.id}/evaluate')
    assert resp.status_code == 201, resp.text
    data = resp.json()
    assert data['created'] is True
    assert data['evaluation']['overall_score'] == 82.0
    assert data['evaluation']['assignment_id'] == assignment.id
    assert data['evaluation']['session_id'] is None
    assert data['feedback']['grade'] == 'B'

    db_session.expire_all()
    s = db_session.get(TrainingSession, session.id)
    a = db_session.get(Assignment, assignment.id)
    assert s.status == 'completed'
    assert s.ended_at is not None
    assert a.status == 'completed'
    assert a.completed_at is not None
    ev = db_session.query(Evaluation).one()
    assert ev.strengths.splitlines() == ['Warm opening', 'Reflective listening']
    assert json.loads(ev.feedback_json)['areas_to_improve'] == ['Ask directly about suicide risk']


def test_second_evaluate_conflicts(client, db_session, login, counselor, assignment, fake_llm):
    session = make_session_with_turns(db_session, assignment_id=assignment.id, turns=2)
    login(counselor)
    assert client.post(f'/sessions/{session.id}/evaluate').status_code == 201
    resp = client.post(f'/sessions/{session.id}/evaluate')
    assert resp.status_code == 409
    assert len(fake_llm['score']) == 1
    db_session.expire_all()
    assert db_session.query(Evaluation).count() == 1


def test_evaluation_flags_written_with_evaluation(client, db_session, login, counselor, assignment, fake_llm):
    fake_llm['flags'] = [
        ScoredFlag(type='missed_risk_assessment', severity='critical', details='Never asked about suicide.'),
    ]
    session = make_session_with_turns(db_session, assignment_id=assignment.id, turns=4)
    login(counselor)
    assert client.post(f'/sessions/{session.id}/evaluate').status_code == 201
    db_session.expire_all()
    flag = db_session.query(SessionFlag).one()
    assert flag.session_id == session.id
    assert flag.severity == 'critical'
    assert flag.source == 'evaluation'
    assert flag.status == 'pending'


def test_scoring_failure_is_retryable_and_writes_nothing(client, db_session, login, counselor, assignment, monkeypatch):
    session = make_session_with_turns(db_session, assignment_id=assignment.id, turns=2)

    def _timeout(*args, **kwargs):
        raise UpstreamException("Scoring service timed out")
    monkeypatch.setattr(evaluation_service, 'score_transcript', _timeout)
    login(counselor)
    resp = client.post(f'/sessions/{session.id}/evaluate')
    assert resp.status_code == 502
    assert resp.json()['error'] == 'UPSTREAM_ERROR'
    assert resp.json()['retryable'] is True

    db_session.expire_all()
    assert db_session.query(Evaluation).count() == 0
    assert db_session.get(TrainingSession, session.id).status == 'active'
    assert db_session.get(Assignment, assignment.id).status == 'in_progress'


def test_evaluate_scores_only_live_attempt(client, db_session, login, counselor, assignment, fake_llm):
    session = make_session_with_turns(db_session, assignment_id=assignment.id, turns=3)
    login(counselor)
    client.patch(f'/sessions/{session.id}', json={'increment_attempt': True})
    client.post(f'/sessions/{session.id}/message', json={'content': 'Let me try that again.'})

    resp = client.post(f'/sessions/{session.id}/evaluate')
    assert resp.status_code == 201, resp.text
    assert fake_llm['score'][0] == [
        {'role': 'user', 'content': 'Let me try that again.'},
        {'role': 'assistant', 'content': 'It\'s been really hard since I lost my job.'},
    ]


def test_retry_after_evaluation_conflicts(client, db_session, login, counselor, assignment, fake_llm):
    session = make_session_with_turns(db_session, assignment_id=assignment.id, turns=2)
    login(counselor)
    client.post(f'/sessions/{session.id}/evaluate')
    resp = client.patch(f'/sessions/{session.id}', json={'increment_attempt': True})
    assert resp.status_code == 409


def test_free_practice_evaluation_keyed_on_session(client, db_session, login, counselor, fake_llm):
    session = make_session_with_turns(db_session, user_id=counselor.id, turns=2)
    login(counselor)
    resp = client.post(f'/sessions/{session.id}/evaluate')
    assert resp.status_code == 201
    assert resp.json()['evaluation']['session_id'] == session.id
    assert resp.json()['evaluation']['assignment_id'] is None


def test_evaluate_forbidden_for_other_counselor(client, db_session, login, other_counselor, assignment, fake_llm):
    session = make_session_with_turns(db_session, assignment_id=assignment.id, turns=2)
    login(other_counselor)
    assert client.post(f'/sessions/{session.id}/evaluate').status_code == 403


def test_evaluate_missing_session_404(client, login, counselor, fake_llm):
    login(counselor)
    assert client.post('/sessions/missing/evaluate').status_code == 404


def test_supervisor_may_evaluate(client, db_session, login, supervisor, assignment, fake_llm):
    session = make_session_with_turns(db_session, assignment_id=assignment.id, turns=2)
    login(supervisor)
    assert client.post(f'/sessions/{session.id}/evaluate').status_code == 201


def test_get_evaluation_access(client, db_session, login, counselor, other_counselor, supervisor, assignment, fake_llm):
    session = make_session_with_turns(db_session, assignment_id=assignment.id, turns=2)
    login(counselor)
    evaluation_id = client.post(f'/sessions/{session.id}/evaluate').json()['evaluation']['id']

    assert client.get(f'/evaluations/{evaluation_id}').status_code == 200
    login(supervisor)
    assert client.get(f'/evaluations/{evaluation_id}').status_code == 200
    login(other_counselor)
    assert client.get(f'/evaluations/{evaluation_id}').status_code == 403
    assert client.get('/evaluations/missing').status_code == 404


def test_mock_scoring_used_without_provider(client, db_session, login, counselor, assignment):
    session = make_session_with_turns(db_session, assignment_id=assignment.id, turns=2)
    login(counselor)
    resp = client.post(f'/sessions/{session.id}/evaluate')
    assert resp.status_code == 201
    assert resp.json()['evaluation']['model'] == 'mock'


def test_locked_database_during_write_is_retried(client, db_session, login, counselor, assignment, fake_llm, monkeypatch):
    session = make_session_with_turns(db_session, assignment_id=assignment.id, turns=2)
    real_persist = evaluation_service._persist
    attempts = []

    def _flaky_persist(db, *args):
        attempts.append(1)
        if len(attempts) == 1:
            raise OperationalError('UPDATE sessions', {}, Exception('database is locked'))
        return real_persist(db, *args)
    monkeypatch.setattr(evaluation_service, '_persist', _flaky_persist)
    monkeypatch.setattr(guard, '_backoff', lambda attempt: None)

    login(counselor)
    resp = client.post(f'/sessions/{session.id}/evaluate')
    assert resp.status_code == 201, resp.text
    assert len(attempts) == 2
    assert len(fake_llm['score']) == 1
    db_session.expire_all()
    assert db_session.query(Evaluation).count() == 1


def test_persistently_locked_database_is_conflict(client, db_session, login, counselor, assignment, fake_llm, monkeypatch):
    session = make_session_with_turns(db_session, assignment_id=assignment.id, turns=2)

    def _locked(db, *args):
        raise OperationalError('UPDATE sessions', {}, Exception('database is locked'))
    monkeypatch.setattr(evaluation_service, '_persist', _locked)
    monkeypatch.setattr(guard, '_backoff', lambda attempt: None)

    login(counselor)
    resp = client.post(f'/sessions/{session.id}/evaluate')
    assert resp.status_code == 409
    assert resp.json()['error'] == 'CONFLICT'
    db_session.expire_all()
    assert db_session.get(TrainingSession, session.id).status == 'active'
