import json
import threading

from classportal.service.session_cache import (
    TOKEN_KEY,
    USER_KEY,
    FileSessionCache,
    MemorySessionCache,
)


USER = {"id": "u1", "email": "u1@example.com", "full_name": "U One", "role": "student"}


def test_memory_cache_round_trip():
    cache = MemorySessionCache()
    cache.store("tok", USER)

    assert cache.get_token() == "tok"
    assert cache.get_user() == USER

    cache.clear()
    assert cache.get_token() is None
    assert cache.get_user() is None


def test_memory_cache_returns_copies():
    cache = MemorySessionCache()
    cache.store("tok", USER)
    cache.get_user()["role"] = "admin"
    assert cache.get_user()["role"] == "student"


def test_file_cache_survives_new_instance(tmp_path):
    path = tmp_path / "nested" / "session.json"
    FileSessionCache(path).store("tok", USER)

    reopened = FileSessionCache(path)
    assert reopened.get_token() == "tok"
    assert reopened.get_user() == USER
    assert set(json.loads(path.read_text())) == {TOKEN_KEY, USER_KEY}


def test_file_cache_store_user_keeps_token(tmp_path):
    cache = FileSessionCache(tmp_path / "session.json")
    cache.store("tok", USER)
    cache.store_user({**USER, "role": "instructor"})

    assert cache.get_token() == "tok"
    assert cache.get_user()["role"] == "instructor"


def test_file_cache_clear_is_idempotent(tmp_path):
    cache = FileSessionCache(tmp_path / "session.json")
    cache.clear()
    cache.store("tok", USER)
    cache.clear()
    cache.clear()
    assert cache.get_token() is None


def test_corrupt_file_reads_as_empty(tmp_path):
    path = tmp_path / "session.json"
    path.write_text("{not json")
    cache = FileSessionCache(path)
    assert cache.get_token() is None
    assert cache.get_user() is None


def test_concurrent_stores_leave_consistent_pair():
    cache = MemorySessionCache()

    def writer(i):
        for _ in range(50):
            cache.store(f"tok-{i}", {**USER, "id": f"u{i}"})

    threads = [threading.Thread(target=writer, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    token = cache.get_token()
    assert token == f"tok-{cache.get_user()['id'][1:]}"
