from questbot import ids, lifecycle
from questbot.models import Activity


def test_extract_num_and_format():
    assert ids.extract_num("G-0042") == 42
    assert ids.extract_num("A-12345") == 12345
    assert ids.extract_num("H-00x1") == 0
    assert ids.extract_num("") == 0
    assert ids.extract_num(None) == 0
    assert ids.format_id("A", 7) == "A-0007"


def test_first_ids_start_at_one(session, user_id):
    assert ids.next_activity_id(session, user_id) == "A-0001"
    assert ids.next_goal_id(session, user_id) == "G-0001"
    assert ids.next_habit_id(session, user_id) == "H-0001"


def test_next_id_is_max_plus_one_across_gaps(session, user_id):
    for aid in ("A-0001", "A-0007", "A-bogus"):
        session.add(Activity(user_id=user_id, activity_id=aid, activity="x", status="captured"))
    session.flush()
    assert ids.next_activity_id(session, user_id) == "A-0008"


def test_ids_are_per_user(session, user_id):
    other = lifecycle.ensure_user(session, "2002")
    lifecycle.capture_activity(session, user_id, "first")
    lifecycle.capture_activity(session, user_id, "second")
    r = lifecycle.capture_activity(session, other.id, "someone else")
    assert r.item_id == "A-0001"


def test_sequential_captures_never_repeat(session, user_id):
    created = [lifecycle.capture_activity(session, user_id, f"item {i}").item_id for i in range(12)]
    session.commit()
    assert len(set(created)) == 12
    assert created[-1] == "A-0012"
