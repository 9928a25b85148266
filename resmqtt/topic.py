"""Topic names and filters.

トピック名とトピックフィルターの検証・照合を行うモジュール。

- トピック名: 空でなく、ワイルドカードを含まない
- トピックフィルター: ``+`` は1階層全体、``#`` は最後の階層全体のみ
"""

from typing import List

from .core.constants import MQTT_MAX_PACKET_ID
from .core.exceptions import MessageError, error_message


def _check_string(topic: str) -> None:
    if not isinstance(topic, str) or not topic:
        raise MessageError(error_message("INVALID_TOPIC", detail="empty topic"))
    if "\x00" in topic:
        raise MessageError(
            error_message("INVALID_TOPIC", detail="contains U+0000")
        )
    size = len(topic.encode("utf-8"))
    if size > MQTT_MAX_PACKET_ID:
        raise MessageError(
            error_message("INVALID_TOPIC", detail=f"{size} bytes is too long")
        )


def validate_topic_name(topic: str) -> None:
    """PUBLISHのトピック名を検証します.

    Raises:
        MessageError: トピック名が不正な場合
    """
    _check_string(topic)
    if "+" in topic or "#" in topic:
        raise MessageError(
            error_message(
                "INVALID_TOPIC", detail=f"wildcards not allowed in '{topic}'"
            )
        )


def validate_topic_filter(topic_filter: str) -> None:
    """SUBSCRIBE/UNSUBSCRIBEのトピックフィルターを検証します.

    Raises:
        MessageError: フィルターが不正な場合
    """
    _check_string(topic_filter)
    levels = topic_filter.split("/")
    for index, level in enumerate(levels):
        # + は階層全体を占める必要がある
        if "+" in level and level != "+":
            raise MessageError(
                error_message(
                    "INVALID_TOPIC", detail=f"misplaced '+' in '{topic_filter}'"
                )
            )
        # # は単独で最後の階層にのみ置ける
        if "#" in level and (level != "#" or index != len(levels) - 1):
            raise MessageError(
                error_message(
                    "INVALID_TOPIC", detail=f"misplaced '#' in '{topic_filter}'"
                )
            )


def topic_matches(topic_filter: str, topic: str) -> bool:
    """トピック名がフィルターに一致するか判定します.

    ``$`` で始まるトピックは先頭がワイルドカードのフィルターに一致しません。

    Args:
        topic_filter: トピックフィルター
        topic: トピック名

    Returns:
        bool: 一致する場合はTrue
    """
    if topic.startswith("$") and topic_filter[:1] in ("+", "#"):
        return False
    return _match_levels(topic_filter.split("/"), topic.split("/"))


def _match_levels(pattern: List[str], levels: List[str]) -> bool:
    for index, segment in enumerate(pattern):
        if segment == "#":
            return True
        if index >= len(levels):
            return False
        if segment != "+" and segment != levels[index]:
            return False
    return len(pattern) == len(levels)
