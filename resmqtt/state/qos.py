"""QoS acknowledgment tracker.

QoS 1/2 の確認応答状態を管理するモジュール。

パケットIDの割り当て、送信中(in-flight)のPUBLISHの段階管理と再送、
受信したQoS 2 PUBLISHの重複排除を担当します。送信すべきパケットは
直接送信せず送信キューに積み、呼び出し側が ``take_outgoing()`` で
取り出して接続に書き込みます。
"""

import time
from dataclasses import dataclass
from enum import Enum, unique
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union

from ..core.constants import (
    MQTT_MAX_INFLIGHT,
    MQTT_MAX_PACKET_ID,
    MQTT_MAX_RETRY_INTERVAL,
    MQTT_RETRY_INTERVAL,
)
from ..core.exceptions import CapacityError, ProtocolError, error_message
from ..core.logging import logger
from ..packet.models import (
    ControlPacket,
    PubAck,
    PubComp,
    Publish,
    PubRec,
    PubRel,
    SubAck,
    Subscribe,
    UnsubAck,
    Unsubscribe,
)
from ..packet.types import QoS


@unique
class OutgoingStage(Enum):
    """送信中PUBLISHのハンドシェイク段階.

    Attributes:
        AWAITING_PUBACK: QoS 1、PUBACK待ち
        AWAITING_PUBREC: QoS 2、PUBREC待ち
        AWAITING_PUBCOMP: QoS 2、PUBREL送信済みでPUBCOMP待ち
    """

    AWAITING_PUBACK = "awaiting_puback"
    AWAITING_PUBREC = "awaiting_pubrec"
    AWAITING_PUBCOMP = "awaiting_pubcomp"


@dataclass
class InFlightOutgoing:
    """送信中のQoS 1/2 PUBLISHのレコード.

    Attributes:
        packet_id: パケットID
        publish: 最初に送信したPUBLISH(DUPなし)
        stage: 現在の段階
        deadline: 次の再送期限(モノトニック時刻)
        retry_count: 現在の段階での再送回数
        dup: 一度でも再送したかどうか
    """

    packet_id: int
    publish: Publish
    stage: OutgoingStage
    deadline: float
    retry_count: int = 0
    dup: bool = False

    @property
    def qos(self) -> QoS:
        return self.publish.qos

    def pending_packet(self) -> ControlPacket:
        """現在の段階で未確認のパケットを返します."""
        if self.stage is OutgoingStage.AWAITING_PUBCOMP:
            return PubRel(self.packet_id)
        if self.dup:
            return self.publish.as_duplicate()
        return self.publish


@dataclass
class InFlightIncoming:
    """受信済みでPUBREL待ちのQoS 2 PUBLISHのレコード.

    Attributes:
        packet_id: パケットID
        received_at: 受信時刻
    """

    packet_id: int
    received_at: float


PendingRequest = Union[Subscribe, Unsubscribe]


class QoSTracker:
    """QoS 1/2 のハンドシェイク状態を管理するクラス.

    送信側と受信側のパケットIDは独立して管理されます。送信側のIDは
    PUBLISH/SUBSCRIBE/UNSUBSCRIBEで共有し、ハンドシェイク完了まで再利用しません。
    """

    def __init__(
        self,
        retry_interval: float = MQTT_RETRY_INTERVAL,
        max_retry_interval: float = MQTT_MAX_RETRY_INTERVAL,
        max_inflight: int = MQTT_MAX_INFLIGHT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """QoSTrackerを初期化します.

        Args:
            retry_interval: 最初の再送までの間隔(秒)
            max_retry_interval: 再送間隔の上限(秒)
            max_inflight: 同時に送信中にできる操作数
            clock: モノトニック時刻を返す関数
        """
        self.retry_interval = retry_interval
        self.max_retry_interval = max_retry_interval
        self.max_inflight = max_inflight
        self._clock = clock
        self._last_id = 0
        self._outgoing: Dict[int, InFlightOutgoing] = {}
        self._incoming: Dict[int, InFlightIncoming] = {}
        self._requests: Dict[int, PendingRequest] = {}
        self._outbox: List[ControlPacket] = []

    # ------------------------------------------------------------------
    # 状態参照
    # ------------------------------------------------------------------

    @property
    def outgoing(self) -> List[InFlightOutgoing]:
        """送信中のPUBLISHレコード(送信順)."""
        return list(self._outgoing.values())

    @property
    def incoming(self) -> List[InFlightIncoming]:
        """PUBREL待ちの受信レコード."""
        return list(self._incoming.values())

    @property
    def pending_requests(self) -> List[PendingRequest]:
        """応答待ちのSUBSCRIBE/UNSUBSCRIBE."""
        return list(self._requests.values())

    def get(self, packet_id: int) -> Optional[InFlightOutgoing]:
        """パケットIDに対応する送信中レコードを返します."""
        return self._outgoing.get(packet_id)

    def has_capacity(self) -> bool:
        """新しい操作にパケットIDを割り当てられるかどうか."""
        return len(self._outgoing) + len(self._requests) < self.max_inflight

    def take_outgoing(self) -> List[ControlPacket]:
        """送信キューのパケットを取り出します.

        Returns:
            List[ControlPacket]: 送信すべきパケット(積まれた順)
        """
        packets, self._outbox = self._outbox, []
        return packets

    # ------------------------------------------------------------------
    # 送信側
    # ------------------------------------------------------------------

    def submit(
        self,
        topic: str,
        payload: bytes,
        qos: QoS = QoS.AT_MOST_ONCE,
        retain: bool = False,
    ) -> Optional[int]:
        """PUBLISHを登録して送信キューに積みます.

        Args:
            topic: トピック名
            payload: ペイロード
            qos: QoSレベル
            retain: 保持フラグ

        Returns:
            Optional[int]: 割り当てたパケットID。QoS 0の場合はNone。

        Raises:
            CapacityError: 空きパケットIDがない場合
        """
        qos = QoS(qos)
        if qos == QoS.AT_MOST_ONCE:
            self._outbox.append(
                Publish(topic=topic, payload=payload, retain=retain)
            )
            return None

        packet_id = self._allocate_id()
        publish = Publish(
            topic=topic,
            payload=payload,
            qos=qos,
            retain=retain,
            packet_id=packet_id,
        )
        stage = (
            OutgoingStage.AWAITING_PUBACK
            if qos == QoS.AT_LEAST_ONCE
            else OutgoingStage.AWAITING_PUBREC
        )
        self._outgoing[packet_id] = InFlightOutgoing(
            packet_id=packet_id,
            publish=publish,
            stage=stage,
            deadline=self._clock() + self.retry_interval,
        )
        self._outbox.append(publish)
        logger.debug(f"PUBLISH登録: id={packet_id}, qos={int(qos)}")
        return packet_id

    def submit_subscribe(self, topics: Iterable[Tuple[str, QoS]]) -> int:
        """SUBSCRIBEを登録して送信キューに積みます.

        Returns:
            int: 割り当てたパケットID
        """
        packet = Subscribe(packet_id=self._allocate_id(), topics=tuple(topics))
        self._requests[packet.packet_id] = packet
        self._outbox.append(packet)
        return packet.packet_id

    def submit_unsubscribe(self, topics: Iterable[str]) -> int:
        """UNSUBSCRIBEを登録して送信キューに積みます.

        Returns:
            int: 割り当てたパケットID
        """
        packet = Unsubscribe(
            packet_id=self._allocate_id(), topics=tuple(topics)
        )
        self._requests[packet.packet_id] = packet
        self._outbox.append(packet)
        return packet.packet_id

    def on_ack(
        self, packet: Union[PubAck, PubRec, PubComp]
    ) -> Optional[InFlightOutgoing]:
        """PUBACK/PUBREC/PUBCOMPを処理して段階を進めます.

        未知のパケットIDへの応答や、PUBREC前のPUBCOMPは無視します。

        Args:
            packet: 受信した確認応答

        Returns:
            Optional[InFlightOutgoing]: ハンドシェイクが完了したレコード

        Raises:
            ProtocolError: 応答の種類がレコードのQoSと矛盾する場合
        """
        record = self._outgoing.get(packet.packet_id)
        if record is None:
            logger.debug(
                f"未知のID宛ての{packet.packet_type.name}を無視: "
                f"id={packet.packet_id}"
            )
            return None

        if isinstance(packet, PubAck):
            if record.stage is not OutgoingStage.AWAITING_PUBACK:
                raise self._mismatch(packet, record)
            return self._complete(record)

        if record.qos != QoS.EXACTLY_ONCE:
            raise self._mismatch(packet, record)

        if isinstance(packet, PubRec):
            if record.stage is OutgoingStage.AWAITING_PUBREC:
                record.stage = OutgoingStage.AWAITING_PUBCOMP
                record.retry_count = 0
                record.deadline = self._clock() + self.retry_interval
            # 重複したPUBRECにもPUBRELを返す
            self._outbox.append(PubRel(record.packet_id))
            return None

        if isinstance(packet, PubComp):
            if record.stage is not OutgoingStage.AWAITING_PUBCOMP:
                logger.warning(
                    f"PUBREC前のPUBCOMPを無視: id={record.packet_id}"
                )
                return None
            return self._complete(record)

        raise ProtocolError(
            error_message(
                "UNEXPECTED_PACKET",
                packet=packet.packet_type.name,
                state="ack tracking",
            )
        )

    def on_suback(self, packet: SubAck) -> Optional[Subscribe]:
        """SUBACKを処理します.

        Returns:
            Optional[Subscribe]: 完了したSUBSCRIBE。未知のIDの場合はNone。

        Raises:
            ProtocolError: UNSUBSCRIBEへの応答、またはリターンコード数の不一致
        """
        request = self._requests.get(packet.packet_id)
        if request is None:
            logger.debug(f"未知のID宛てのSUBACKを無視: id={packet.packet_id}")
            return None
        if not isinstance(request, Subscribe):
            raise ProtocolError(
                error_message(
                    "UNEXPECTED_PACKET",
                    packet="SUBACK",
                    state=f"UNSUBSCRIBE id={packet.packet_id}",
                )
            )
        if len(packet.return_codes) != len(request.topics):
            raise ProtocolError(
                error_message(
                    "SUBACK_MISMATCH",
                    packet_id=packet.packet_id,
                    count=len(packet.return_codes),
                    expected=len(request.topics),
                )
            )
        del self._requests[packet.packet_id]
        return request

    def on_unsuback(self, packet: UnsubAck) -> Optional[Unsubscribe]:
        """UNSUBACKを処理します.

        Returns:
            Optional[Unsubscribe]: 完了したUNSUBSCRIBE。未知のIDの場合はNone。

        Raises:
            ProtocolError: SUBSCRIBEへの応答だった場合
        """
        request = self._requests.get(packet.packet_id)
        if request is None:
            logger.debug(
                f"未知のID宛てのUNSUBACKを無視: id={packet.packet_id}"
            )
            return None
        if not isinstance(request, Unsubscribe):
            raise ProtocolError(
                error_message(
                    "UNEXPECTED_PACKET",
                    packet="UNSUBACK",
                    state=f"SUBSCRIBE id={packet.packet_id}",
                )
            )
        del self._requests[packet.packet_id]
        return request

    def tick(self, now: float) -> int:
        """再送期限を過ぎたレコードを再送します.

        再送間隔は指数的に伸び、``max_retry_interval`` で頭打ちになります。
        再送回数に上限はありません。

        Args:
            now: 現在のモノトニック時刻

        Returns:
            int: 再送したレコード数
        """
        resent = 0
        for record in list(self._outgoing.values()):
            if now >= record.deadline:
                record.retry_count += 1
                record.dup = True
                interval = min(
                    self.retry_interval * (2**record.retry_count),
                    self.max_retry_interval,
                )
                record.deadline = now + interval
                self._outbox.append(record.pending_packet())
                resent += 1
                logger.debug(
                    f"再送: id={record.packet_id}, "
                    f"段階={record.stage.value}, 回数={record.retry_count}"
                )
        return resent

    def resume(self, now: float) -> int:
        """セッション再開時に未完了の操作をすべて再送キューに積みます.

        PUBLISHはDUPフラグ付きで、PUBCOMP待ちのレコードはPUBRELを、
        応答待ちのSUBSCRIBE/UNSUBSCRIBEはそのまま送り直します。

        Args:
            now: 現在のモノトニック時刻

        Returns:
            int: 積んだパケット数
        """
        self._outbox.clear()
        for record in self._outgoing.values():
            record.dup = True
            record.deadline = now + self.retry_interval
            self._outbox.append(record.pending_packet())
        self._outbox.extend(self._requests.values())
        return len(self._outbox)

    def reset(self) -> int:
        """全ての状態を破棄します(クリーンセッション).

        Returns:
            int: 破棄した送信中の操作数
        """
        dropped = len(self._outgoing) + len(self._requests)
        self._outgoing.clear()
        self._incoming.clear()
        self._requests.clear()
        self._outbox.clear()
        return dropped

    # ------------------------------------------------------------------
    # 受信側
    # ------------------------------------------------------------------

    def on_publish(self, packet: Publish) -> bool:
        """受信したPUBLISHを処理し、アプリケーションへ配信すべきか判定します.

        QoS 1はPUBACK、QoS 2はPUBRECを送信キューに積みます。QoS 2で既に
        追跡中のIDは配信しませんが、PUBRECは毎回返します。

        Args:
            packet: 受信したPUBLISH

        Returns:
            bool: アプリケーションに配信する場合はTrue
        """
        if packet.qos == QoS.AT_MOST_ONCE:
            return True

        packet_id = packet.packet_id
        if packet.qos == QoS.AT_LEAST_ONCE:
            self._outbox.append(PubAck(packet_id))
            return True

        self._outbox.append(PubRec(packet_id))
        if packet_id in self._incoming:
            logger.debug(f"重複したQoS 2 PUBLISHを抑止: id={packet_id}")
            return False
        self._incoming[packet_id] = InFlightIncoming(
            packet_id=packet_id, received_at=self._clock()
        )
        return True

    def on_pubrel(self, packet_id: int) -> bool:
        """PUBRELを処理してPUBCOMPを送信キューに積みます.

        Args:
            packet_id: PUBRELのパケットID

        Returns:
            bool: 追跡中のレコードを削除した場合はTrue
        """
        removed = self._incoming.pop(packet_id, None)
        self._outbox.append(PubComp(packet_id))
        return removed is not None

    # ------------------------------------------------------------------
    # 内部処理
    # ------------------------------------------------------------------

    def _allocate_id(self) -> int:
        for _ in range(MQTT_MAX_PACKET_ID):
            self._last_id = self._last_id % MQTT_MAX_PACKET_ID + 1
            if (
                self._last_id not in self._outgoing
                and self._last_id not in self._requests
            ):
                return self._last_id
        raise CapacityError("No free packet identifier")

    def _complete(self, record: InFlightOutgoing) -> InFlightOutgoing:
        del self._outgoing[record.packet_id]
        logger.debug(f"ハンドシェイク完了: id={record.packet_id}")
        return record

    @staticmethod
    def _mismatch(
        packet: ControlPacket, record: InFlightOutgoing
    ) -> ProtocolError:
        return ProtocolError(
            error_message(
                "ACK_MISMATCH",
                packet=packet.packet_type.name,
                packet_id=record.packet_id,
                qos=int(record.qos),
            )
        )
