import json
import logging

import pytest

from chatlink.db import Database
from chatlink.models import User
from chatlink.protocol import MsgType, decode
from chatlink.service import ChatService
from chatlink.stores import GroupModel, OfflineMsgModel, UserModel

PASSWORD = "password"


class FakeConn:
    def __init__(self):
        self.sent = []

    def send(self, message):
        self.sent.append(message)

    def messages(self):
        return [decode(data) for data in self.sent]


class FakeBroker:
    def __init__(self):
        self.handler = None
        self.connected = False
        self.published = []
        self.subscribed = []
        self.unsubscribed = []

    def set_notify_handler(self, handler):
        self.handler = handler

    def connect(self):
        self.connected = True
        return True

    def publish(self, channel, message):
        self.published.append((channel, message))
        return True

    def subscribe(self, channel):
        self.subscribed.append(channel)
        return True

    def unsubscribe(self, channel):
        self.unsubscribed.append(channel)
        return True


@pytest.fixture
def db():
    database = Database(":memory:").connect()
    database.create_schema()
    yield database
    database.close()


@pytest.fixture
def broker():
    return FakeBroker()


@pytest.fixture
def service(db, broker):
    return ChatService(db, broker)


def register(svc, name):
    conn = FakeConn()
    svc.reg(conn, {"msgid": MsgType.REG_MSG, "name": name, "password": PASSWORD})
    return conn.messages()[-1]["id"]


def login(svc, userid, conn=None):
    conn = conn or FakeConn()
    svc.login(conn, {"msgid": MsgType.LOGIN_MSG, "id": userid, "password": PASSWORD})
    return conn, conn.messages()[-1]


def test_construction_connects_broker_and_sets_handler(service, broker):
    assert broker.connected is True
    assert broker.handler == service.handle_broker_message


def test_register_success_and_duplicate(service, db):
    conn = FakeConn()
    service.reg(conn, {"msgid": MsgType.REG_MSG, "name": "alice", "password": PASSWORD})
    service.reg(conn, {"msgid": MsgType.REG_MSG, "name": "alice", "password": PASSWORD})
    first, second = conn.messages()
    assert first["msgid"] == MsgType.REG_MSG_ACK
    assert first["errno"] == 0
    assert UserModel(db).query(first["id"]).name == "alice"
    assert second == {"msgid": MsgType.REG_MSG_ACK, "errno": 1}


def test_login_success_marks_online_and_subscribes(service, db, broker):
    uid = register(service, "alice")
    _, response = login(service, uid)
    assert response == {
        "msgid": MsgType.LOGIN_MSG_ACK,
        "errno": 0,
        "id": uid,
        "name": "alice",
    }
    assert UserModel(db).query(uid).state == "online"
    assert broker.subscribed == [uid]


def test_login_wrong_password(service):
    uid = register(service, "alice")
    conn = FakeConn()
    service.login(conn, {"msgid": MsgType.LOGIN_MSG, "id": uid, "password": "secret"})
    response = conn.messages()[0]
    assert response["errno"] == 1
    assert response["errmsg"] == "id or password is invalid!"


def test_login_unknown_user(service):
    _, response = login(service, 999)
    assert response["errno"] == 1


def test_login_twice_is_rejected(service):
    uid = register(service, "alice")
    login(service, uid)
    _, response = login(service, uid)
    assert response["errno"] == 2
    assert response["errmsg"] == "this account is using, input another!"


def test_one_chat_to_local_online_user_is_forwarded(service):
    alice = register(service, "alice")
    bob = register(service, "bob")
    bob_conn, _ = login(service, bob)
    js = {"msgid": MsgType.ONE_CHAT_MSG, "id": alice, "name": "alice",
          "toid": bob, "msg": "hi", "time": "2024-01-01 10:00:00"}
    service.one_chat(FakeConn(), js)
    assert bob_conn.messages()[-1] == js


def test_one_chat_to_offline_user_is_stored_and_delivered_on_login(service, db):
    alice = register(service, "alice")
    bob = register(service, "bob")
    js = {"msgid": MsgType.ONE_CHAT_MSG, "id": alice, "name": "alice",
          "toid": bob, "msg": "later", "time": "2024-01-01 10:00:00"}
    service.one_chat(FakeConn(), js)
    stored = OfflineMsgModel(db).query(bob)
    assert [json.loads(text) for text in stored] == [js]

    _, response = login(service, bob)
    assert [json.loads(text) for text in response["offlinemsg"]] == [js]
    assert OfflineMsgModel(db).query(bob) == []


def test_one_chat_to_user_online_elsewhere_is_published(service, db, broker):
    alice = register(service, "alice")
    bob = register(service, "bob")
    UserModel(db).update_state(User(id=bob, state="online"))
    js = {"msgid": MsgType.ONE_CHAT_MSG, "id": alice, "toid": bob, "msg": "relay"}
    service.one_chat(FakeConn(), js)
    assert len(broker.published) == 1
    channel, text = broker.published[0]
    assert channel == bob
    assert json.loads(text) == js
    assert OfflineMsgModel(db).query(bob) == []


def test_friends_are_listed_on_login(service):
    alice = register(service, "alice")
    bob = register(service, "bob")
    service.add_friend(FakeConn(), {"msgid": MsgType.ADD_FRIEND_MSG, "id": alice, "friendid": bob})
    _, response = login(service, alice)
    friends = [json.loads(text) for text in response["friends"]]
    assert friends == [{"id": bob, "name": "bob", "state": "offline"}]


def test_groups_are_listed_on_login_with_roles(service, db):
    alice = register(service, "alice")
    bob = register(service, "bob")
    service.create_group(FakeConn(), {"msgid": MsgType.CREATE_GROUP_MSG, "id": alice,
                                      "groupname": "devs", "groupdesc": "team"})
    groupid = GroupModel(db).query_groups(alice)[0].id
    service.add_group(FakeConn(), {"msgid": MsgType.ADD_GROUP_MSG, "id": bob, "groupid": groupid})

    _, response = login(service, bob)
    groups = [json.loads(text) for text in response["groups"]]
    assert len(groups) == 1
    group = groups[0]
    assert group["id"] == groupid
    assert group["groupname"] == "devs"
    assert group["groupdesc"] == "team"
    roles = {json.loads(u)["name"]: json.loads(u)["role"] for u in group["users"]}
    assert roles == {"alice": "creator", "bob": "normal"}


def test_group_chat_reaches_every_other_member(service, db, broker):
    alice = register(service, "alice")
    bob = register(service, "bob")
    carol = register(service, "carol")
    dave = register(service, "dave")
    service.create_group(FakeConn(), {"msgid": MsgType.CREATE_GROUP_MSG, "id": alice,
                                      "groupname": "g", "groupdesc": "d"})
    groupid = GroupModel(db).query_groups(alice)[0].id
    for member in (bob, carol, dave):
        service.add_group(FakeConn(), {"msgid": MsgType.ADD_GROUP_MSG, "id": member,
                                       "groupid": groupid})
    alice_conn, _ = login(service, alice)
    bob_conn, _ = login(service, bob)
    UserModel(db).update_state(User(id=dave, state="online"))
    sent_before = len(alice_conn.sent)

    js = {"msgid": MsgType.GROUP_CHAT_MSG, "id": alice, "name": "alice",
          "groupid": groupid, "msg": "hello all"}
    service.group_chat(alice_conn, js)

    assert bob_conn.messages()[-1] == js
    assert [json.loads(t) for t in OfflineMsgModel(db).query(carol)] == [js]
    assert [(ch, json.loads(t)) for ch, t in broker.published] == [(dave, js)]
    assert len(alice_conn.sent) == sent_before


def test_loginout_marks_offline_and_unsubscribes(service, db, broker):
    alice = register(service, "alice")
    bob = register(service, "bob")
    login(service, bob)
    service.loginout(FakeConn(), {"msgid": MsgType.LOGINOUT_MSG, "id": bob})
    assert UserModel(db).query(bob).state == "offline"
    assert broker.unsubscribed == [bob]
    service.one_chat(FakeConn(), {"msgid": MsgType.ONE_CHAT_MSG, "id": alice, "toid": bob, "msg": "x"})
    assert len(OfflineMsgModel(db).query(bob)) == 1


def test_client_close_exception_forgets_connection(service, db, broker):
    uid = register(service, "alice")
    conn, _ = login(service, uid)
    service.client_close_exception(conn)
    assert UserModel(db).query(uid).state == "offline"
    assert broker.unsubscribed == [uid]
    _, response = login(service, uid)
    assert response["errno"] == 0


def test_client_close_exception_unknown_connection_changes_nothing(service, db, broker):
    uid = register(service, "alice")
    conn, _ = login(service, uid)
    service.client_close_exception(FakeConn())
    assert broker.unsubscribed == []
    assert UserModel(db).query(uid).state == "online"
    js = {"msgid": MsgType.ONE_CHAT_MSG, "id": uid, "toid": uid, "msg": "still here"}
    service.one_chat(FakeConn(), js)
    assert conn.messages()[-1] == js


def test_reset_marks_everyone_offline(service, db):
    alice = register(service, "alice")
    bob = register(service, "bob")
    login(service, alice)
    login(service, bob)
    service.reset()
    users = UserModel(db)
    assert [users.query(alice).state, users.query(bob).state] == ["offline", "offline"]


def test_broker_message_for_local_user_is_sent(service):
    uid = register(service, "alice")
    conn, _ = login(service, uid)
    payload = {"msgid": int(MsgType.ONE_CHAT_MSG), "toid": uid, "msg": "relayed"}
    service.handle_broker_message(uid, json.dumps(payload))
    assert conn.messages()[-1] == payload


def test_broker_message_for_absent_user_is_stored(service, db):
    uid = register(service, "alice")
    service.handle_broker_message(uid, '{"msg":"kept"}')
    assert OfflineMsgModel(db).query(uid) == ['{"msg":"kept"}']


def test_dispatch_routes_by_msgid(service, db):
    conn = FakeConn()
    service.dispatch(conn, {"msgid": int(MsgType.REG_MSG), "name": "erin", "password": PASSWORD})
    response = conn.messages()[0]
    assert response["errno"] == 0
    assert UserModel(db).query(response["id"]).name == "erin"


def test_unknown_msgid_is_logged_and_ignored(service, caplog):
    conn = FakeConn()
    with caplog.at_level(logging.ERROR, logger="chatlink.service"):
        service.dispatch(conn, {"msgid": 99})
    assert conn.sent == []
    assert "can not find handler" in caplog.text


def test_get_handler_returns_registered_method(service):
    assert service.get_handler(MsgType.LOGIN_MSG) == service.login
    assert service.get_handler(int(MsgType.GROUP_CHAT_MSG)) == service.group_chat


def test_service_without_broker_stores_nothing_for_remote_user(db):
    svc = ChatService(db)
    alice = register(svc, "alice")
    bob = register(svc, "bob")
    UserModel(db).update_state(User(id=bob, state="online"))
    svc.one_chat(FakeConn(), {"msgid": MsgType.ONE_CHAT_MSG, "id": alice, "toid": bob, "msg": "x"})
    assert OfflineMsgModel(db).query(bob) == []