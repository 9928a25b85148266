"""Offline buffer.

未接続時や送信ウィンドウが満杯の時にアプリケーションの要求を保持する
有界FIFOバッファを提供するモジュール。

容量に達した状態で追加すると最も古いエントリを破棄して新しいエントリを
受け入れます。破棄はコールバックとログで必ず通知されます。
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, List, Optional, Tuple, Union

from ..core.constants import OFFLINE_BUFFER_CAPACITY
from ..core.logging import log_error
from ..packet.types import QoS


@dataclass(frozen=True)
class PendingPublish:
    """保留中のpublish要求(パケットIDは送信時に割り当て).

    Attributes:
        topic: トピック名
        payload: ペイロード
        qos: 要求QoS
        retain: 保持フラグ
    """

    topic: str
    payload: bytes = b""
    qos: QoS = QoS.AT_MOST_ONCE
    retain: bool = False


@dataclass(frozen=True)
class PendingSubscribe:
    """保留中のsubscribe要求.

    Attributes:
        topics: (トピックフィルター, 要求QoS)のタプル
    """

    topics: Tuple[Tuple[str, QoS], ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class PendingUnsubscribe:
    """保留中のunsubscribe要求.

    Attributes:
        topics: 購読解除するトピックフィルター
    """

    topics: Tuple[str, ...] = field(default_factory=tuple)


OfflineEntry = Union[PendingPublish, PendingSubscribe, PendingUnsubscribe]


class OfflineBuffer:
    """送信待ち要求の有界FIFOバッファ.

    Attributes:
        capacity: 保持できる最大エントリ数
        evicted: これまでに破棄したエントリ数
    """

    def __init__(
        self,
        capacity: int = OFFLINE_BUFFER_CAPACITY,
        on_evict: Optional[Callable[[OfflineEntry], None]] = None,
    ) -> None:
        """OfflineBufferを初期化します.

        Args:
            capacity: 最大エントリ数(1以上)
            on_evict: エントリを破棄した時に呼ばれるコールバック

        Raises:
            ValueError: 容量が1未満の場合
        """
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self.capacity = capacity
        self.evicted = 0
        self._on_evict = on_evict
        self._entries: Deque[OfflineEntry] = deque()

    def enqueue(self, entry: OfflineEntry) -> bool:
        """エントリを末尾に追加します.

        容量に達している場合は最も古いエントリを破棄してから追加します。

        Args:
            entry: 追加するエントリ

        Returns:
            bool: 破棄なしで追加できた場合はTrue、
                古いエントリを破棄した場合はFalse
        """
        admitted = True
        if len(self._entries) >= self.capacity:
            dropped = self._entries.popleft()
            self.evicted += 1
            admitted = False
            log_error(
                "BUFFER_EVICTED",
                logging.WARNING,
                capacity=self.capacity,
                entry=type(dropped).__name__,
            )
            if self._on_evict is not None:
                self._on_evict(dropped)

        self._entries.append(entry)
        return admitted

    def drain(self) -> List[OfflineEntry]:
        """全エントリを投入順に取り出します.

        Returns:
            List[OfflineEntry]: 投入順のエントリ。空の場合は空リスト。
        """
        entries = list(self._entries)
        self._entries.clear()
        return entries

    def pop(self) -> Optional[OfflineEntry]:
        """最も古いエントリを1件取り出します."""
        if not self._entries:
            return None
        return self._entries.popleft()

    def peek(self) -> Optional[OfflineEntry]:
        """最も古いエントリを取り出さずに返します."""
        if not self._entries:
            return None
        return self._entries[0]

    def __len__(self) -> int:
        return len(self._entries)
