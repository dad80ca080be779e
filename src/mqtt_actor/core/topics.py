"""
Topic Parsing and Matching.

This module is responsible for:
- Splitting topic names and filters into segments. Empty segments are kept,
  since `a//b` and `a/b` are different topics.
- Validating topic filters and topic names before they reach the transport.
- Matching a concrete topic path against a subscription filter, honoring the
  single-level (`+`) and multi-level (`#`) wildcards.
"""
from typing import Iterable, List, Optional, Sequence, Tuple, Union

from mqtt_actor.core.errors import InvalidTopicError
from mqtt_actor.core.models import as_qos

SEPARATOR = "/"
SINGLE_LEVEL = "+"
MULTI_LEVEL = "#"

Topic = Union[str, Sequence[str]]


def split_topic(topic: Topic) -> List[str]:
    if isinstance(topic, str):
        return topic.split(SEPARATOR)
    return list(topic)


def join_topic(topic: Topic) -> str:
    if isinstance(topic, str):
        return topic
    return SEPARATOR.join(topic)


def matches(topic_filter: Topic, topic_path: Topic) -> bool:
    """
    Checks whether a published topic path is covered by a topic filter.

    For example `room/+/temp` matches `room/kitchen/temp` but not
    `room/kitchen/x/temp`, and `room/#` matches both `room` and
    `room/kitchen/temp`. Comparison is case-sensitive.
    """
    pattern = split_topic(topic_filter)
    path = split_topic(topic_path)

    for index, segment in enumerate(pattern):
        if segment == MULTI_LEVEL:
            # '#' swallows the rest of the path (even nothing) but only as the last segment
            return index == len(pattern) - 1
        if index >= len(path):
            return False
        if segment != SINGLE_LEVEL and segment != path[index]:
            return False

    return len(pattern) == len(path)


def validate_filter(topic_filter: Topic) -> str:
    """
    Validate a topic filter according to MQTT rules:
    - Single-level wildcard (+) can be used at any level but must occupy an entire level
    - Multi-level wildcard (#) must occupy an entire level and be the last one

    Returns the filter as a string.
    """
    topic = join_topic(topic_filter)
    if not topic:
        raise InvalidTopicError("Topic filter cannot be empty")
    if "\x00" in topic:
        raise InvalidTopicError(f"Topic filter contains a null character: {topic!r}")

    segments = topic.split(SEPARATOR)
    for index, segment in enumerate(segments):
        if SINGLE_LEVEL in segment and segment != SINGLE_LEVEL:
            raise InvalidTopicError(f"'+' must occupy an entire level: {topic!r}")
        if MULTI_LEVEL in segment and (segment != MULTI_LEVEL or index != len(segments) - 1):
            raise InvalidTopicError(f"'#' must be alone and at the last level: {topic!r}")
    return topic


def validate_topic_name(topic_name: Topic) -> str:
    """Topic names we publish to must be concrete: non-empty and wildcard free."""
    topic = join_topic(topic_name)
    if not topic:
        raise InvalidTopicError("Topic name cannot be empty")
    if SINGLE_LEVEL in topic or MULTI_LEVEL in topic:
        raise InvalidTopicError(f"Topic name cannot contain wildcards: {topic!r}")
    if "\x00" in topic:
        raise InvalidTopicError(f"Topic name contains a null character: {topic!r}")
    return topic


def normalize_subscriptions(topics: Union[Topic, Iterable], qos: Optional[int] = None) -> List[Tuple[str, int]]:
    """
    Turns the accepted subscribe arguments into a list of (filter, qos) pairs.

    Accepts a single filter with `qos`, or an iterable of `(filter, qos)`
    pairs. Plain filters inside the iterable use `qos` (default 0).
    """
    default_qos = 0 if qos is None else qos
    if isinstance(topics, str):
        return [(validate_filter(topics), int(as_qos(default_qos)))]

    pairs = []
    for entry in topics:
        if isinstance(entry, str):
            topic_filter, entry_qos = entry, default_qos
        else:
            topic_filter, entry_qos = entry
        pairs.append((validate_filter(topic_filter), int(as_qos(entry_qos))))

    if not pairs:
        raise InvalidTopicError("At least one topic filter is required")
    return pairs


def normalize_filters(filters: Union[str, Iterable[str]]) -> List[str]:
    if isinstance(filters, str):
        return [validate_filter(filters)]
    result = [validate_filter(topic_filter) for topic_filter in filters]
    if not result:
        raise InvalidTopicError("At least one topic filter is required")
    return result
