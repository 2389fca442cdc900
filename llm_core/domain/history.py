"""按 agent 隔离的对话历史存储。

每个 agent（任意可哈希、稳定的标识）拥有一个独立的消息列表，
列表按插入顺序原样回放给 Provider。历史只保存在内存中，
首次写入时惰性创建，只能显式清除。

同一 agent 的并发调用通过 TurnTicket 串行化：票据在分发时领取，
执行时按领取顺序依次进入，保证 prompt/reply 对按调用顺序追加。
"""

import threading
from typing import Dict, Hashable, Iterable, List, Set, Tuple

from llm_core.domain.models import ChatMessage


class _Lane:
    """单个 agent 的 FIFO 排队状态。"""

    def __init__(self) -> None:
        self.cond = threading.Condition()
        self.next_number = 0
        self.serving = 0
        self.skipped: Set[int] = set()

    def idle(self) -> bool:
        """所有已领取的票据都已释放。"""

        with self.cond:
            return self.serving == self.next_number


class TurnTicket:
    """某个 agent 的一次对话轮次票据。

    `with ticket:` 会阻塞直到所有更早领取的票据都已释放。
    未进入就释放（例如任务提交失败）时会被标记为跳过，不会卡住后续票据。
    """

    def __init__(self, agent_id: Hashable, lane: _Lane, number: int):
        self.agent_id = agent_id
        self.number = number
        self._lane = lane
        self._released = False

    def __enter__(self) -> "TurnTicket":
        lane = self._lane
        with lane.cond:
            while lane.serving != self.number:
                lane.cond.wait()
        return self

    def __exit__(self, *exc_info) -> bool:
        self.release()
        return False

    def release(self) -> None:
        lane = self._lane
        with lane.cond:
            if self._released:
                return
            self._released = True
            if self.number == lane.serving:
                lane.serving += 1
                while lane.serving in lane.skipped:
                    lane.skipped.discard(lane.serving)
                    lane.serving += 1
            else:
                lane.skipped.add(self.number)
            lane.cond.notify_all()


class HistoryStore:
    """内存中的 per-agent 对话历史。

    - snapshot 返回不可变的元组副本，调用方拿到的永远不是内部列表。
    - 未知 agent 的 snapshot 返回空元组，而不是报错。
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._conversations: Dict[Hashable, List[ChatMessage]] = {}
        self._lanes: Dict[Hashable, _Lane] = {}

    def append(self, agent_id: Hashable, role: str, content: str) -> ChatMessage:
        message = ChatMessage(role=role, content=content)
        with self._lock:
            self._conversations.setdefault(agent_id, []).append(message)
        return message

    def append_turn(self, agent_id: Hashable, prompt: str, reply: str) -> Tuple[ChatMessage, ChatMessage]:
        """原子地追加一轮完整对话：先 user 再 assistant。"""

        user_msg = ChatMessage.user(prompt)
        assistant_msg = ChatMessage.assistant(reply)
        with self._lock:
            history = self._conversations.setdefault(agent_id, [])
            history.append(user_msg)
            history.append(assistant_msg)
        return user_msg, assistant_msg

    def snapshot(self, agent_id: Hashable) -> Tuple[ChatMessage, ...]:
        with self._lock:
            return tuple(self._conversations.get(agent_id, ()))

    def replace(self, agent_id: Hashable, messages: Iterable[ChatMessage]) -> None:
        """用给定消息整体替换某个 agent 的历史。"""

        new_history = list(messages)
        with self._lock:
            self._conversations[agent_id] = new_history

    def clear(self, agent_id: Hashable) -> None:
        with self._lock:
            self._conversations.pop(agent_id, None)
            lane = self._lanes.get(agent_id)
            if lane is not None and lane.idle():
                del self._lanes[agent_id]

    def clear_all(self) -> None:
        with self._lock:
            self._conversations.clear()
            # 仍有未释放票据的 agent 保留排队状态
            for agent_id in [a for a, lane in self._lanes.items() if lane.idle()]:
                del self._lanes[agent_id]

    def agents(self) -> List[Hashable]:
        with self._lock:
            return list(self._conversations.keys())

    def reserve_turn(self, agent_id: Hashable) -> TurnTicket:
        """在分发时领取票据，决定该调用在此 agent 上的执行顺序。"""

        # 加锁顺序固定为 self._lock -> lane.cond，领票与 clear 中的回收互斥
        with self._lock:
            lane = self._lanes.get(agent_id)
            if lane is None:
                lane = self._lanes[agent_id] = _Lane()
            with lane.cond:
                number = lane.next_number
                lane.next_number += 1
        return TurnTicket(agent_id, lane, number)
