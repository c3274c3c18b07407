import os
import pytest
from sqlmodel import Session, select
from toxvault.client.database import HistoryDatabase, HistoryMessage

SALT = os.urandom(32)
FRIEND = bytes(range(32))
ME = bytes(range(32, 64))


def open_db(path, password):
    return HistoryDatabase(path, password, SALT, iterations=1000)


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "alice.db"


def test_plain_history(db_path):
    db = open_db(db_path, "")
    assert db.is_open
    db.add_message(FRIEND, ME, "hello")
    db.add_message(FRIEND, FRIEND, "hi back")
    db.add_message(ME, ME, "note to self")
    assert [m.body for m in db.get_messages(FRIEND)] == ["hello", "hi back"]
    assert db.get_messages(FRIEND)[0].sender_pk == ME.hex().upper()


def test_encrypted_history(db_path):
    db = open_db(db_path, "secret")
    db.add_message(FRIEND, ME, "hello")
    with Session(db.engine) as session:
        stored = session.exec(select(HistoryMessage)).one()
    assert stored.body != "hello"
    db.close()

    assert [m.body for m in open_db(db_path, "secret").get_messages(FRIEND)] == ["hello"]
    assert not open_db(db_path, "wrong").is_open
    assert not open_db(db_path, "").is_open


def test_plain_history_refuses_password(db_path):
    open_db(db_path, "").close()
    assert not open_db(db_path, "secret").is_open


def test_set_password_rekeys_messages(db_path):
    db = open_db(db_path, "")
    db.add_message(FRIEND, ME, "hello")
    assert db.set_password("new")
    assert [m.body for m in db.get_messages(FRIEND)] == ["hello"]
    db.close()

    assert not open_db(db_path, "").is_open
    db = open_db(db_path, "new")
    assert [m.body for m in db.get_messages(FRIEND)] == ["hello"]
    assert db.set_password("")
    db.close()
    assert open_db(db_path, "").get_messages(FRIEND)[0].body == "hello"


def test_rename_and_remove(db_path):
    db = open_db(db_path, "secret")
    db.add_message(FRIEND, ME, "hello")
    assert db.rename("bob")
    assert db.path == db_path.with_name("bob.db")
    assert not db_path.exists()
    assert db.get_messages(FRIEND)[0].body == "hello"

    assert db.remove()
    assert not db.is_open
    assert not db_path.with_name("bob.db").exists()
