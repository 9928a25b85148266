"""Client-side protocol state.

プロトコル状態を管理するパッケージ。

- QoS 1/2 の確認応答トラッカー
- 未送信要求のオフラインバッファ
"""

from .offline import (
    OfflineBuffer,
    OfflineEntry,
    PendingPublish,
    PendingSubscribe,
    PendingUnsubscribe,
)
from .qos import InFlightIncoming, InFlightOutgoing, OutgoingStage, QoSTracker

__all__ = [
    "QoSTracker",
    "InFlightOutgoing",
    "InFlightIncoming",
    "OutgoingStage",
    "OfflineBuffer",
    "OfflineEntry",
    "PendingPublish",
    "PendingSubscribe",
    "PendingUnsubscribe",
]
