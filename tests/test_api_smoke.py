import json

from sqlalchemy import select

from eduquest.core.config import settings
from eduquest.models.orm import Question, QuestionAttempt, User


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "healthy"


def test_requires_token(client):
    r = client.get("/v1/stages")
    assert r.status_code == 401
    assert r.json()["error"]["status_code"] == 401


def test_mock_login_provisions_profile(client, db):
    r = client.post("/v1/auth/mock-login", json={"user_id": "kid", "roles": ["student"], "display_name": "Kid"})
    assert r.status_code == 200
    hdr = {"Authorization": f"Bearer {r.json()['access_token']}"}
    r = client.get("/v1/attempts/stats", headers=hdr)
    assert r.status_code == 200
    assert r.json()["level"] == 1


def test_stage_session_flow(client, db, make, auth, fake_redis):
    make.user("s1")
    stage = make.stage(questions_per_session=2, bonus_exp=20, bonus_gold=10, first_clear_exp=50, first_clear_gold=25)
    make.question(unit_id=1)
    make.question(unit_id=1, answer_correct="A")
    db.commit()
    hdr = auth("s1")
    events = fake_redis.pubsub()
    events.subscribe(settings.EVENTS_CHANNEL)

    r = client.post(f"/v1/stages/{stage.id}/start", headers=hdr)
    assert r.status_code == 200
    assert r.json()["progress"]["session_state"] == "in_session"

    answered = set()
    for expected_total in (1, 2):
        r = client.get(f"/v1/stages/{stage.id}/question", headers=hdr)
        assert r.status_code == 200
        body = r.json()
        assert "answer_correct" not in body["question"]
        qid = body["question"]["id"]
        assert qid not in answered
        answered.add(qid)

        r = client.post(f"/v1/attempts/{qid}", headers=hdr,
                        json={"answer": "B", "time_spent_seconds": 4, "stage_id": stage.id})
        assert r.status_code == 200
        result = r.json()
        assert result["session"]["session_total"] == expected_total
        assert result["explanation"] is None
        assert result["unlocked_achievements"] == []
        assert result["daily_practice"] is None

    r = client.post(f"/v1/stages/{stage.id}/complete", headers=hdr, json={"correct_count": 2, "total_count": 2})
    assert r.status_code == 200
    done = r.json()
    assert done["correct_count"] == 1
    assert done["correct_rate"] == 50
    assert done["is_passed"] is False
    assert done["rewards"] == {"bonus_exp": 0, "bonus_gold": 0}

    r = client.post(f"/v1/stages/{stage.id}/complete", headers=hdr)
    assert r.status_code == 409
    assert r.json()["error"]["code"] == "SESSION_NOT_IN_PROGRESS"

    db.expire_all()
    user = db.get(User, "s1")
    assert user.exp == 10
    assert user.total_questions_answered == 2
    attempts = list(db.scalars(select(QuestionAttempt).where(QuestionAttempt.student_id == "s1")))
    assert len(attempts) == 2
    assert all(a.session_id for a in attempts)
    stats = [db.get(Question, qid) for qid in answered]
    assert all(q.total_attempts == 1 for q in stats)
    assert sum(q.correct_count for q in stats) == 1

    published = []
    while (msg := events.get_message(timeout=0.1)) is not None:
        if msg["type"] == "message":
            published.append(json.loads(msg["data"])["type"])
    assert published == ["answer_submitted", "answer_submitted", "stage_completed"]


def test_quick_practice_daily_limit(client, db, make, auth, monkeypatch):
    monkeypatch.setattr(settings, "DAILY_PRACTICE_REWARD_LIMIT", 1)
    make.user("s1")
    q = make.question(unit_id=3)
    db.commit()
    hdr = auth("s1")

    r = client.get("/v1/attempts/question/random", headers=hdr, params={"unit_ids": [3]})
    assert r.status_code == 200
    assert r.json()["id"] == q.id

    first = client.post(f"/v1/attempts/{q.id}", headers=hdr, json={"answer": "B"}).json()
    assert first["rewards"] == {"exp": 10, "gold": 5}
    assert first["daily_practice"]["limit_reached"] is True

    second = client.post(f"/v1/attempts/{q.id}", headers=hdr, json={"answer": "B"}).json()
    assert second["is_correct"] is True
    assert second["rewards"] == {"exp": 0, "gold": 0}

    history = client.get("/v1/attempts/history", headers=hdr).json()
    assert history["total"] == 2


def test_unknown_question_and_empty_answer(client, db, make, auth):
    make.user("s1")
    q = make.question()
    db.commit()
    hdr = auth("s1")
    r = client.post("/v1/attempts/999", headers=hdr, json={"answer": "A"})
    assert r.status_code == 404
    assert r.json()["error"]["code"] == "QUESTION_NOT_FOUND"
    r = client.post(f"/v1/attempts/{q.id}", headers=hdr, json={"answer": ""})
    assert r.status_code == 400


def test_shop_inventory_and_boost(client, db, make, auth):
    make.user("s1", gold=100)
    potion = make.item(price=40)
    q = make.question()
    db.commit()
    hdr = auth("s1")

    r = client.post(f"/v1/shop/buy/{potion.id}", headers=hdr, json={"quantity": 3})
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "INSUFFICIENT_GOLD"

    r = client.post(f"/v1/shop/buy/{potion.id}", headers=hdr, json={"quantity": 2})
    assert r.status_code == 200
    assert r.json()["gold_remaining"] == 20

    r = client.post(f"/v1/inventory/use/{potion.id}", headers=hdr)
    assert r.status_code == 200
    assert r.json()["remaining_quantity"] == 1

    inv = client.get("/v1/inventory", headers=hdr).json()
    assert inv["items"][0]["quantity"] == 1
    assert [e["type"] for e in inv["active_effects"]] == ["exp_boost"]

    answer = client.post(f"/v1/attempts/{q.id}", headers=hdr, json={"answer": "B"}).json()
    assert answer["rewards"] == {"exp": 20, "gold": 5}


def test_leaderboard_endpoints(client, db, make, auth):
    make.user("s1", exp=30)
    make.user("s2", exp=60)
    db.commit()
    hdr = auth("s1")

    r = client.get("/v1/leaderboard", headers=hdr, params={"type": "exp", "period": "all", "limit": 1})
    assert r.status_code == 200
    body = r.json()
    assert [e["student_id"] for e in body["leaderboard"]] == ["s2"]
    assert body["current_user"]["rank"] == 2

    r = client.get("/v1/leaderboard", headers=hdr, params={"type": "speed"})
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "VALIDATION_ERROR"

    r = client.get("/v1/leaderboard/my-rank", headers=hdr)
    assert r.json()["exp"]["rank"] == 2


def test_stage_answer_needs_open_session_and_pool_question(client, db, make, auth):
    make.user("s1")
    stage = make.stage(unit_ids=[1], questions_per_session=2)
    inside = make.question(unit_id=1)
    outside = make.question(unit_id=99)
    db.commit()
    hdr = auth("s1")

    r = client.post(f"/v1/attempts/{inside.id}", headers=hdr, json={"answer": "B", "stage_id": stage.id})
    assert r.status_code == 409
    assert r.json()["error"]["code"] == "SESSION_NOT_IN_PROGRESS"

    client.post(f"/v1/stages/{stage.id}/start", headers=hdr)
    r = client.post(f"/v1/attempts/{outside.id}", headers=hdr, json={"answer": "B", "stage_id": stage.id})
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "QUESTION_NOT_IN_STAGE"

    for status in (200, 409):
        r = client.post(f"/v1/attempts/{inside.id}", headers=hdr, json={"answer": "B", "stage_id": stage.id})
        assert r.status_code == status

    r = client.get("/v1/attempts/stats", headers=hdr)
    assert r.json()["total_attempts"] == 1
    assert r.json()["exp_earned"] == 10
