from datetime import datetime, timedelta, UTC

from app.exceptions import UpstreamException
from app.models.session_flag import SessionFlag
from app.services import analysis
from app.services.analysis import AnalysisResult, ConsistencyReport, Finding
from factories import make_session_with_turns


def test_feedback_flag_severity_escalation(client, db_session, login, counselor, assignment):
    session = make_session_with_turns(db_session, assignment_id=assignment.id, turns=2)
    login(counselor)
    expected = {
        'ai_guidance_concern': 'critical',
        'voice_technical_issue': 'warning',
        'scenario_issue': 'info',
    }
    for flag_type, severity in expected.items():
        resp = client.post(f'/sessions/{session.id}/flag', json={'type': flag_type, 'details': 'Caller advice felt unsafe'})
        assert resp.status_code == 201, resp.text
        assert resp.json()['severity'] == severity
        assert resp.json()['source'] == 'user_feedback'
        assert resp.json()['status'] == 'pending'


def test_feedback_flag_rejects_unknown_type(client, db_session, login, counselor, assignment):
    session = make_session_with_turns(db_session, assignment_id=assignment.id, turns=2)
    login(counselor)
    resp = client.post(f'/sessions/{session.id}/flag', json={'type': 'spam', 'details': 'x'})
    assert resp.status_code == 400


def test_feedback_flag_forbidden_for_other_counselor(client, db_session, login, other_counselor, assignment):
    session = make_session_with_turns(db_session, assignment_id=assignment.id, turns=2)
    login(other_counselor)
    resp = client.post(f'/sessions/{session.id}/flag', json={'type': 'other', 'details': 'x'})
    assert resp.status_code == 403


def test_list_flags_orders_by_severity_then_recency(client, db_session, login, supervisor, counselor, assignment):
    session = make_session_with_turns(db_session, assignment_id=assignment.id, turns=2)
    base = datetime.now(UTC)
    rows = [
        ('old-info', 'info', base - timedelta(hours=3)),
        ('new-warning', 'warning', base - timedelta(minutes=5)),
        ('old-critical', 'critical', base - timedelta(hours=2)),
        ('new-critical', 'critical', base - timedelta(minutes=1)),
    ]
    for flag_type, severity, created in rows:
        db_session.add(SessionFlag(session_id=session.id, type=flag_type, severity=severity,
                                   details='d', source='analysis', created_at=created))
    db_session.commit()

    login(supervisor)
    resp = client.get('/flags')
    assert resp.status_code == 200
    assert [f['type'] for f in resp.json()] == ['new-critical', 'old-critical', 'new-warning', 'old-info']

    resp = client.get('/flags', params={'severity': 'critical'})
    assert len(resp.json()) == 2
    assert client.get('/flags', params={'severity': 'urgent'}).status_code == 400

    login(counselor)
    assert client.get('/flags').status_code == 403


def test_analyze_requires_supervisor(client, db_session, login, counselor, assignment):
    session = make_session_with_turns(db_session, assignment_id=assignment.id, turns=4)
    login(counselor)
    assert client.post(f'/sessions/{session.id}/analyze').status_code == 403


def test_analyze_skips_short_transcript(client, db_session, login, supervisor, assignment):
    session = make_session_with_turns(db_session, assignment_id=assignment.id, turns=2)
    login(supervisor)
    resp = client.post(f'/sessions/{session.id}/analyze')
    assert resp.status_code == 200
    assert resp.json() == {
        'analyzed': False, 'reason': 'insufficient_transcript',
        'flag_count': None, 'overall_consistency_score': None,
    }


def test_clean_analysis_leaves_audit_flag_and_is_idempotent(client, db_session, login, supervisor, assignment, monkeypatch):
    session = make_session_with_turns(db_session, assignment_id=assignment.id, turns=4)
    calls = []

    def _analyze(turns, prompt, description):
        calls.append(turns)
        return AnalysisResult(consistency=ConsistencyReport(overall_score=94, summary='Caller stayed in character'))
    monkeypatch.setattr(analysis, 'analyze_transcript', _analyze)

    login(supervisor)
    resp = client.post(f'/sessions/{session.id}/analyze')
    assert resp.status_code == 200, resp.text
    assert resp.json()['analyzed'] is True
    assert resp.json()['flag_count'] == 1

    db_session.expire_all()
    flag = db_session.query(SessionFlag).one()
    assert flag.type == 'analysis_clean'
    assert flag.source == 'analysis'
    assert flag.metadata_json['overall_consistency_score'] == 94

    resp = client.post(f'/sessions/{session.id}/analyze')
    assert resp.json()['analyzed'] is False
    assert resp.json()['reason'] == 'already_analyzed'
    assert len(calls) == 1


def test_analysis_findings_become_flags(client, db_session, login, supervisor, assignment, monkeypatch):
    session = make_session_with_turns(db_session, assignment_id=assignment.id, turns=4)

    def _analyze(turns, prompt, description):
        return AnalysisResult(
            misuse=[Finding(type='off_topic_use', severity='warning', details='Asked for homework help',
                            evidence='turn 2')],
            consistency=ConsistencyReport(overall_score=60, findings=[
                Finding(type='character_break', severity='critical', details='Caller gave clinical advice',
                        prompt_reference='Stay in character'),
            ]),
        )
    monkeypatch.setattr(analysis, 'analyze_transcript', _analyze)

    login(supervisor)
    resp = client.post(f'/sessions/{session.id}/analyze')
    assert resp.json()['flag_count'] == 2
    db_session.expire_all()
    types = {f.type: f for f in db_session.query(SessionFlag).all()}
    assert set(types) == {'off_topic_use', 'character_break'}
    assert types['character_break'].metadata_json['prompt_reference'] == 'Stay in character'


def test_analysis_upstream_failure(client, db_session, login, supervisor, assignment, monkeypatch):
    session = make_session_with_turns(db_session, assignment_id=assignment.id, turns=4)

    def _fail(*args):
        raise UpstreamException('Analysis service timed out')
    monkeypatch.setattr(analysis, 'analyze_transcript', _fail)
    login(supervisor)
    assert client.post(f'/sessions/{session.id}/analyze').status_code == 502
    db_session.expire_all()
    assert db_session.query(SessionFlag).count() == 0


def test_analysis_finding_normalizes_severity():
    assert Finding(type='x', severity='SEVERE', details='d').severity == 'info'
    assert Finding(type='x', severity=' Critical ', details='d').severity == 'critical'


def test_analysis_finishing_second_discards_its_findings(client, db_session, login, supervisor, assignment, monkeypatch):
    session = make_session_with_turns(db_session, assignment_id=assignment.id, turns=4)
    session_id = session.id

    def _analyze_while_other_request_finishes(turns, prompt, description):
        db_session.add(SessionFlag(session_id=session_id, type='analysis_clean', severity='info',
                                   details='Finished first', source='analysis'))
        db_session.commit()
        return AnalysisResult(misuse=[Finding(type='off_topic_use', severity='warning', details='late')])
    monkeypatch.setattr(analysis, 'analyze_transcript', _analyze_while_other_request_finishes)

    login(supervisor)
    resp = client.post(f'/sessions/{session_id}/analyze')
    assert resp.status_code == 200
    assert resp.json()['analyzed'] is False
    assert resp.json()['reason'] == 'already_analyzed'
    db_session.expire_all()
    assert [f.type for f in db_session.query(SessionFlag).all()] == ['analysis_clean']
