import threading
import time

import pytest

from llm_core.domain.exceptions import ValidationError
from llm_core.domain.history import HistoryStore
from llm_core.domain.models import ChatMessage


def test_history_isolated_per_agent():
    store = HistoryStore()
    store.append_turn("a", "hi", "hello")
    for i in range(5):
        store.append_turn("b", f"q{i}", f"r{i}")
    assert [m.content for m in store.snapshot("a")] == ["hi", "hello"]
    assert len(store.snapshot("b")) == 10


def test_append_turn_order_and_roles():
    store = HistoryStore()
    store.append_turn(1, "p1", "r1")
    store.append_turn(1, "p2", "r2")
    assert [(m.role, m.content) for m in store.snapshot(1)] == [
        ("user", "p1"),
        ("assistant", "r1"),
        ("user", "p2"),
        ("assistant", "r2"),
    ]


def test_snapshot_is_a_copy_and_unknown_agent_is_empty():
    store = HistoryStore()
    assert store.snapshot("nobody") == ()
    store.append("a", "user", "x")
    snap = store.snapshot("a")
    store.append("a", "assistant", "y")
    assert len(snap) == 1
    assert isinstance(snap, tuple)


def test_invalid_role_rejected():
    store = HistoryStore()
    with pytest.raises(ValidationError):
        store.append("a", "tool", "x")
    assert store.snapshot("a") == ()


def test_clear_replace_and_clear_all():
    store = HistoryStore()
    store.append_turn("a", "p", "r")
    store.append_turn("b", "p", "r")
    store.clear("a")
    assert store.snapshot("a") == ()
    assert len(store.snapshot("b")) == 2

    store.replace("a", [ChatMessage.system("be brief"), ChatMessage.user("x")])
    assert [m.role for m in store.snapshot("a")] == ["system", "user"]
    assert sorted(store.agents()) == ["a", "b"]

    store.clear_all()
    assert store.agents() == []


def test_turn_tickets_run_in_reservation_order():
    store = HistoryStore()
    tickets = [store.reserve_turn("a") for _ in range(3)]
    order = []

    def run(ticket, delay):
        time.sleep(delay)
        with ticket:
            order.append(ticket.number)

    # 后领取的票据先启动，仍然要按领取顺序执行
    threads = [threading.Thread(target=run, args=(t, d)) for t, d in zip(tickets, (0.1, 0.05, 0.0))]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5)
    assert order == [0, 1, 2]


def test_released_ticket_does_not_block_later_turns():
    store = HistoryStore()
    first = store.reserve_turn("a")
    second = store.reserve_turn("a")
    third = store.reserve_turn("a")
    second.release()
    with first:
        pass
    entered = threading.Event()

    def run():
        with third:
            entered.set()

    t = threading.Thread(target=run)
    t.start()
    t.join(timeout=5)
    assert entered.is_set()


def test_tickets_for_different_agents_are_independent():
    store = HistoryStore()
    store.reserve_turn("a")  # 未释放
    other = store.reserve_turn("b")
    with other:
        store.append_turn("b", "p", "r")
    assert len(store.snapshot("b")) == 2


def test_clear_drops_idle_turn_lanes():
    store = HistoryStore()
    for agent in ("A", "B", "C"):
        with store.reserve_turn(agent):
            store.append_turn(agent, "hi", "hello")
    busy = store.reserve_turn("C")

    store.clear("A")
    assert "A" not in store._lanes
    store.clear_all()
    assert list(store._lanes) == ["C"]

    busy.release()
    store.clear("C")
    assert store._lanes == {}
    # 回收后重新领票从头开始
    with store.reserve_turn("A") as ticket:
        assert ticket.number == 0
