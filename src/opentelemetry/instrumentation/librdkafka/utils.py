from dataclasses import dataclass
from logging import getLogger
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import confluent_kafka

from opentelemetry import propagate, trace
from opentelemetry.instrumentation.librdkafka.process_span import (
    ProcessSpanTracker,
)
from opentelemetry.propagators import textmap
from opentelemetry.semconv._incubating.attributes.messaging_attributes import (
    MESSAGING_DESTINATION_NAME,
    MESSAGING_DESTINATION_PARTITION_ID,
    MESSAGING_KAFKA_MESSAGE_KEY,
    MESSAGING_KAFKA_OFFSET,
    MESSAGING_OPERATION_NAME,
    MESSAGING_OPERATION_TYPE,
    MESSAGING_SYSTEM,
    MessagingSystemValues,
)
from opentelemetry.trace import Link, SpanKind, Tracer
from opentelemetry.trace.span import Span
from opentelemetry.util.types import AttributeValue

_LOG = getLogger(__name__)

# Confluent schema registry framing: a magic \0 byte and a 4-byte schema id
_SCHEMA_FRAMING_LENGTH = 5

# Message headers arrived in librdkafka v0.11.4
_HEADERS_MIN_LIBVERSION = 0x000B0400

ProduceHookT = Optional[Callable[[Span, Tuple, Dict], None]]
ConsumeHookT = Optional[
    Callable[[Span, confluent_kafka.Message, Tuple, Dict], None]
]
KeyProcessorT = Optional[Callable[[bytes], Any]]


def strip_schema_framing(key: bytes) -> bytes:
    """Drop the schema registry framing header from a serialized key.

    Avro, Protobuf and JSON Schema serializers from the Confluent schema
    registry prefix every payload with a magic ``\\0`` byte followed by the
    4-byte id of the schema used. The header is noise in a span attribute.
    """
    if len(key) < _SCHEMA_FRAMING_LENGTH:
        raise ValueError(
            f"Message key is {len(key)} bytes long, shorter than the "
            f"{_SCHEMA_FRAMING_LENGTH}-byte schema framing header"
        )
    return key[_SCHEMA_FRAMING_LENGTH:]


def _flag(kwargs: Dict, name: str) -> bool:
    value = kwargs.get(name)
    return True if value is None else bool(value)


@dataclass(frozen=True)
class InstrumentationConfig:
    create_poll_span: bool = True
    create_process_span: bool = True
    key_processor: KeyProcessorT = None
    produce_hook: ProduceHookT = None
    consume_hook: ConsumeHookT = None

    @classmethod
    def from_kwargs(cls, **kwargs) -> "InstrumentationConfig":
        """Build the configuration from ``instrument()`` keyword arguments

        Raises:
            ValueError: if both ``key_processor`` and
                ``key_uses_schema_framing`` are set.
        """
        key_processor = kwargs.get("key_processor")
        if kwargs.get("key_uses_schema_framing"):
            if key_processor:
                raise ValueError(
                    "Cannot set both 'key_processor' and 'key_uses_schema_framing'"
                )
            key_processor = strip_schema_framing

        return cls(
            create_poll_span=_flag(kwargs, "create_poll_span"),
            create_process_span=_flag(kwargs, "create_process_span"),
            key_processor=key_processor,
            produce_hook=kwargs.get("produce_hook"),
            consume_hook=kwargs.get("consume_hook"),
        )

    @property
    def traces_poll(self) -> bool:
        return self.create_poll_span or self.create_process_span


class KafkaPropertiesExtractor:
    @staticmethod
    def _extract_argument(key, position, default_value, args, kwargs):
        if len(args) > position:
            return args[position]
        return kwargs.get(key, default_value)

    @staticmethod
    def extract_produce_topic(args, kwargs):
        """extract topic from `produce` method arguments in Producer class"""
        return KafkaPropertiesExtractor._extract_argument(
            "topic", 0, None, args, kwargs
        )

    @staticmethod
    def extract_produce_key(args, kwargs):
        """extract key from `produce` method arguments in Producer class"""
        return KafkaPropertiesExtractor._extract_argument(
            "key", 2, None, args, kwargs
        )

    @staticmethod
    def extract_produce_partition(args, kwargs):
        """extract partition from `produce` method arguments in Producer class"""
        return KafkaPropertiesExtractor._extract_argument(
            "partition", 3, None, args, kwargs
        )

    @staticmethod
    def extract_produce_headers(args, kwargs):
        """extract headers from `produce` method arguments in Producer class"""
        return KafkaPropertiesExtractor._extract_argument(
            "headers", 6, None, args, kwargs
        )

    @staticmethod
    def replace_produce_headers(args, kwargs, headers):
        """return `produce` arguments with the headers swapped for ``headers``"""
        if len(args) > 6:
            return (*args[:6], headers, *args[7:]), kwargs
        return args, {**kwargs, "headers": headers}

    @staticmethod
    def extract_commit_message(args, kwargs):
        """extract message from `commit` method arguments in Consumer class"""
        return KafkaPropertiesExtractor._extract_argument(
            "message", 0, None, args, kwargs
        )


def _decode(value):
    if isinstance(value, bytes):
        # an undecodable header yields an invalid context, not an error
        return value.decode(errors="replace")
    return value


class KafkaContextGetter(textmap.Getter[textmap.CarrierT]):
    def get(self, carrier: textmap.CarrierT, key: str) -> Optional[List[str]]:
        if carrier is None:
            return None

        if isinstance(carrier, dict):
            value = carrier.get(key)
            return None if value is None else [_decode(value)]

        for item_key, value in carrier:
            if item_key == key:
                if value is not None:
                    return [_decode(value)]
        return None

    def keys(self, carrier: textmap.CarrierT) -> List[str]:
        if carrier is None:
            return []
        if isinstance(carrier, dict):
            return list(carrier)
        return [key for (key, value) in carrier]


class KafkaContextSetter(textmap.Setter[textmap.CarrierT]):
    def set(self, carrier: textmap.CarrierT, key: str, value: str) -> None:
        if carrier is None or key is None:
            return

        if value:
            value = value.encode()

        if isinstance(carrier, dict):
            carrier[key] = value
            return

        carrier[:] = [item for item in carrier if item[0] != key]
        carrier.append((key, value))


_kafka_getter = KafkaContextGetter()
_kafka_setter = KafkaContextSetter()


def _copy_headers(headers):
    if headers is None:
        return []
    if isinstance(headers, dict):
        return dict(headers)
    return list(headers)


def _links_from_messages(
    messages: Sequence[confluent_kafka.Message],
) -> List[Link]:
    links = []
    for message in messages:
        if not callable(getattr(message, "headers", None)):
            break

        extracted_context = propagate.extract(
            message.headers(), getter=_kafka_getter
        )
        span_context = trace.get_current_span(
            extracted_context
        ).get_span_context()
        if not span_context.is_valid:
            continue

        links.append(Link(span_context))
    return links


def _process_key(key, config: InstrumentationConfig):
    if key is None:
        return None
    if config.key_processor is not None:
        key = config.key_processor(key)
    if isinstance(key, bytes):
        # binary keys, e.g. Avro, are not valid string attributes
        try:
            return key.decode()
        except UnicodeDecodeError:
            return key.hex()
    return key


def _base_attributes(
    operation_name: str, operation_type: str
) -> Dict[str, AttributeValue]:
    return {
        MESSAGING_SYSTEM: MessagingSystemValues.KAFKA.value,
        MESSAGING_OPERATION_NAME: operation_name,
        MESSAGING_OPERATION_TYPE: operation_type,
    }


def _poll_attributes() -> Dict[str, AttributeValue]:
    return _base_attributes("poll", "receive")


def _process_attributes(
    messages: Sequence[confluent_kafka.Message],
    config: InstrumentationConfig,
) -> Dict[str, AttributeValue]:
    attributes = _base_attributes("process", "process")
    attributes[MESSAGING_DESTINATION_NAME] = messages[0].topic()

    # A batch may hold several partitions and offsets, these only
    # describe a single message
    if len(messages) == 1:
        message = messages[0]
        partition = message.partition()
        if partition is not None:
            attributes[MESSAGING_DESTINATION_PARTITION_ID] = partition

        offset = message.offset()
        if offset is not None:
            attributes[MESSAGING_KAFKA_OFFSET] = offset

        key = _process_key(message.key(), config)
        if key is not None:
            attributes[MESSAGING_KAFKA_MESSAGE_KEY] = key

    return attributes


def _commit_attributes(
    topic: Optional[str], partition: Optional[int]
) -> Dict[str, AttributeValue]:
    attributes = _base_attributes("commit", "settle")
    if topic is not None:
        attributes[MESSAGING_DESTINATION_NAME] = topic
    if partition is not None:
        attributes[MESSAGING_DESTINATION_PARTITION_ID] = partition
    return attributes


def _send_attributes(
    topic: Optional[str],
    partition: Optional[int],
    key,
    config: InstrumentationConfig,
) -> Dict[str, AttributeValue]:
    attributes = _base_attributes("send", "send")
    if topic is not None:
        attributes[MESSAGING_DESTINATION_NAME] = topic
    if partition is not None:
        attributes[MESSAGING_DESTINATION_PARTITION_ID] = partition

    key = _process_key(key, config)
    if key is not None:
        attributes[MESSAGING_KAFKA_MESSAGE_KEY] = key
    return attributes


def _get_span_name(operation: str, topic: Optional[str] = None) -> str:
    if topic:
        return f"{operation} {topic}"
    return operation


def _as_messages(result) -> List[confluent_kafka.Message]:
    if result is None:
        return []
    if isinstance(result, list):
        return result
    return [result]


def _run_hook(hook: Optional[Callable], *hook_args) -> None:
    try:
        if callable(hook):
            hook(*hook_args)
    except Exception as hook_exception:  # pylint: disable=W0703
        _LOG.exception(hook_exception)


def _call_through(func: Callable, instance, args, kwargs):
    return func(*args, **kwargs)


def _create_process_span(
    tracer: Tracer,
    config: InstrumentationConfig,
    messages: Sequence[confluent_kafka.Message],
) -> Span:
    topic = messages[0].topic()
    attributes = _process_attributes(messages, config)
    return tracer.start_span(
        _get_span_name("process", topic),
        kind=SpanKind.CONSUMER,
        attributes=attributes,
        links=_links_from_messages(messages),
    )


def _wrap_poll(
    tracer: Tracer,
    config: InstrumentationConfig,
    process_spans: ProcessSpanTracker,
) -> Callable:
    """Trace `poll` and `consume`, which differ only in how many messages
    they hand back.

    The process span of the previous call is ended before anything else,
    so it is never the parent of the new poll span. A new process span is
    left open as the current span once messages arrive and is ended by the
    next call on the same consumer.
    """

    def _traced_poll(func, instance, args, kwargs):
        process_spans.end(instance)

        if config.create_poll_span:
            # No destination in the name, a poll can cover several topics
            with tracer.start_as_current_span(
                "poll",
                kind=SpanKind.CONSUMER,
                attributes=_poll_attributes(),
            ):
                result = func(*args, **kwargs)
        else:
            result = func(*args, **kwargs)

        if not config.create_process_span:
            return result

        messages = _as_messages(result)
        if messages:
            span = _create_process_span(tracer, config, messages)
            for message in messages:
                _run_hook(config.consume_hook, span, message, args, kwargs)
            process_spans.start(instance, span)

        return result

    return _traced_poll


def _wrap_close(process_spans: ProcessSpanTracker) -> Callable:
    def _traced_close(func: Callable, instance, args, kwargs):
        # a closed consumer is never polled again
        process_spans.end(instance)
        return func(*args, **kwargs)

    return _traced_close


def _wrap_commit(tracer: Tracer) -> Callable:
    def _traced_commit(func, instance, args, kwargs):
        message = KafkaPropertiesExtractor.extract_commit_message(
            args, kwargs
        )
        topic, partition, links = None, None, []
        if message is not None:
            topic = message.topic()
            partition = message.partition()
            links = _links_from_messages([message])

        with tracer.start_as_current_span(
            _get_span_name("commit", topic),
            kind=SpanKind.CLIENT,
            attributes=_commit_attributes(topic, partition),
            links=links,
        ):
            return func(*args, **kwargs)

    return _traced_commit


def _send_span_name_and_attributes(args, kwargs, config):
    topic = KafkaPropertiesExtractor.extract_produce_topic(args, kwargs)
    attributes = _send_attributes(
        topic,
        KafkaPropertiesExtractor.extract_produce_partition(args, kwargs),
        KafkaPropertiesExtractor.extract_produce_key(args, kwargs),
        config,
    )
    return _get_span_name("send", topic), attributes


def _wrap_produce(tracer: Tracer, config: InstrumentationConfig) -> Callable:
    def _traced_produce(func, instance, args, kwargs):
        span_name, attributes = _send_span_name_and_attributes(
            args, kwargs, config
        )
        headers = _copy_headers(
            KafkaPropertiesExtractor.extract_produce_headers(args, kwargs)
        )
        args, kwargs = KafkaPropertiesExtractor.replace_produce_headers(
            args, kwargs, headers
        )

        with tracer.start_as_current_span(
            span_name, kind=SpanKind.PRODUCER, attributes=attributes
        ) as span:
            propagate.inject(headers, setter=_kafka_setter)
            _run_hook(config.produce_hook, span, args, kwargs)
            return func(*args, **kwargs)

    return _traced_produce


def _wrap_produce_raw(
    tracer: Tracer, config: InstrumentationConfig
) -> Callable:
    """Trace `produce` without propagating: there is no header channel to
    carry the trace context."""

    def _traced_produce_raw(func, instance, args, kwargs):
        span_name, attributes = _send_span_name_and_attributes(
            args, kwargs, config
        )

        with tracer.start_as_current_span(
            span_name, kind=SpanKind.PRODUCER, attributes=attributes
        ) as span:
            _run_hook(config.produce_hook, span, args, kwargs)
            return func(*args, **kwargs)

    return _traced_produce_raw


def _supports_headers() -> bool:
    return confluent_kafka.libversion()[1] >= _HEADERS_MIN_LIBVERSION


def _select_produce_wrapper(
    tracer: Tracer, config: InstrumentationConfig
) -> Callable:
    if _supports_headers():
        return _wrap_produce(tracer, config)

    _LOG.debug(
        "librdkafka %s does not support message headers, "
        "trace context will not be propagated to consumers",
        confluent_kafka.libversion()[0],
    )
    return _wrap_produce_raw(tracer, config)
