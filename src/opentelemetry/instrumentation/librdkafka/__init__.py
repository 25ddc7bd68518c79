# Copyright The OpenTelemetry Authors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Instrument confluent-kafka, the librdkafka binding, to report polled, processed,
committed and produced messages

Usage
-----

..code:: python

    import confluent_kafka
    from opentelemetry.instrumentation.librdkafka import LibrdKafkaInstrumentor

    # Instrument before creating any Producer or Consumer
    LibrdKafkaInstrumentor().instrument()

    # report a span of type producer with the default settings
    producer = confluent_kafka.Producer({"bootstrap.servers": "localhost:9092"})
    producer.produce("my-topic", b"raw_bytes", key=b"my-key")

    # report a poll span for every poll, and a process span
    # covering the handling of each returned message
    consumer = confluent_kafka.Consumer({
        "bootstrap.servers": "localhost:9092",
        "group.id": "my-group",
    })
    consumer.subscribe(["my-topic"])
    while True:
        message = consumer.poll(1.0)
        if message is None:
            continue
        # process message, inside the "process my-topic" span
        consumer.commit(message=message)

The process span stays open, as the current span, until the next call to
``poll`` or ``consume`` on the same consumer, or until that consumer is
closed. Anything the application does with a message is traced as a child of
it.

The _instrument() method accepts the following keyword args:
tracer_provider (TracerProvider) - an optional tracer provider
create_poll_span (bool) - report a span around every poll, defaults to True
create_process_span (bool) - report a span for the processing of polled messages, defaults to True
key_processor (Callable) - a function applied to message keys before they are recorded
this function signature is:
def key_processor(key: bytes) -> Any
key_uses_schema_framing (bool) - strip the 5-byte schema registry header from message keys,
cannot be combined with key_processor
produce_hook (Callable) - a function with extra user-defined logic to be performed before sending the message
this function signature is:
def produce_hook(span: Span, args, kwargs)
consume_hook (Callable) - a function with extra user-defined logic to be performed after polling a message
this function signature is:
def consume_hook(span: Span, message: confluent_kafka.Message, args, kwargs)

Producers and consumers created before instrumenting, or imported with
``from confluent_kafka import Consumer`` beforehand, are not affected. Wrap
them explicitly instead:

.. code: python

    from opentelemetry.instrumentation.librdkafka import LibrdKafkaInstrumentor

    consumer = LibrdKafkaInstrumentor.instrument_consumer(
        consumer, key_uses_schema_framing=True
    )
    producer = LibrdKafkaInstrumentor.instrument_producer(producer)

API
___
"""
from typing import Any, Collection, Dict, Tuple

import confluent_kafka
from wrapt import wrap_function_wrapper

from opentelemetry import trace
from opentelemetry.instrumentation.instrumentor import BaseInstrumentor
from opentelemetry.instrumentation.librdkafka.package import _instruments
from opentelemetry.instrumentation.librdkafka.process_span import (
    process_spans,
)
from opentelemetry.instrumentation.librdkafka.utils import (
    InstrumentationConfig,
    _call_through,
    _select_produce_wrapper,
    _wrap_close,
    _wrap_commit,
    _wrap_poll,
)
from opentelemetry.instrumentation.librdkafka.version import __version__
from opentelemetry.trace import Tracer


def _get_tracer(tracer_provider=None) -> Tracer:
    return trace.get_tracer(
        __name__,
        __version__,
        tracer_provider=tracer_provider,
        schema_url="https://opentelemetry.io/schemas/1.27.0",
    )


# pylint: disable=useless-parent-delegation
class AutoInstrumentedProducer(confluent_kafka.Producer):
    def produce(self, *args, **kwargs):
        return super().produce(*args, **kwargs)


class AutoInstrumentedConsumer(confluent_kafka.Consumer):
    def poll(self, *args, **kwargs):
        return super().poll(*args, **kwargs)

    def consume(self, *args, **kwargs):
        return super().consume(*args, **kwargs)

    def commit(self, *args, **kwargs):
        return super().commit(*args, **kwargs)

    def close(self, *args, **kwargs):
        return super().close(*args, **kwargs)


class ProxiedProducer:
    """Traces ``produce`` and delegates everything else to ``producer``"""

    def __init__(
        self, producer, tracer: Tracer, config: InstrumentationConfig
    ):
        self._producer = producer
        self._traced_produce = _select_produce_wrapper(tracer, config)

    def produce(self, *args, **kwargs):
        return self._traced_produce(self._producer.produce, self, args, kwargs)

    def original_producer(self):
        return self._producer

    def __len__(self):
        return len(self._producer)

    def __getattr__(self, name):
        return getattr(self._producer, name)


class ProxiedConsumer:
    """Traces ``poll``, ``consume`` and ``commit``, ends the pending process
    span on ``close`` and delegates everything else to ``consumer``"""

    def __init__(
        self, consumer, tracer: Tracer, config: InstrumentationConfig
    ):
        self._consumer = consumer
        self._traced_poll = (
            _wrap_poll(tracer, config, process_spans)
            if config.traces_poll
            else _call_through
        )
        self._traced_commit = _wrap_commit(tracer)
        self._traced_close = _wrap_close(process_spans)

    def poll(self, *args, **kwargs):
        return self._traced_poll(self._consumer.poll, self, args, kwargs)

    def consume(self, *args, **kwargs):
        return self._traced_poll(self._consumer.consume, self, args, kwargs)

    def commit(self, *args, **kwargs):
        return self._traced_commit(self._consumer.commit, self, args, kwargs)

    def close(self, *args, **kwargs):
        return self._traced_close(self._consumer.close, self, args, kwargs)

    def original_consumer(self):
        return self._consumer

    def __getattr__(self, name):
        return getattr(self._consumer, name)


class LibrdKafkaInstrumentor(BaseInstrumentor):
    """An instrumentor for the confluent_kafka module
    See `BaseInstrumentor`
    """

    # (owner, attribute) -> value before instrumenting
    _originals: Dict[Tuple[Any, str], Any] = {}

    @staticmethod
    def instrument_producer(
        producer: confluent_kafka.Producer, tracer_provider=None, **kwargs
    ) -> ProxiedProducer:
        config = InstrumentationConfig.from_kwargs(**kwargs)
        return ProxiedProducer(producer, _get_tracer(tracer_provider), config)

    @staticmethod
    def instrument_consumer(
        consumer: confluent_kafka.Consumer, tracer_provider=None, **kwargs
    ) -> ProxiedConsumer:
        config = InstrumentationConfig.from_kwargs(**kwargs)
        return ProxiedConsumer(consumer, _get_tracer(tracer_provider), config)

    @staticmethod
    def uninstrument_producer(producer):
        if isinstance(producer, ProxiedProducer):
            return producer.original_producer()
        return producer

    @staticmethod
    def uninstrument_consumer(consumer):
        if isinstance(consumer, ProxiedConsumer):
            process_spans.end(consumer)
            return consumer.original_consumer()
        return consumer

    def instrumentation_dependencies(self) -> Collection[str]:
        return _instruments

    def _instrument(self, **kwargs):
        """Instruments the confluent_kafka module

        Args:
            **kwargs: Optional arguments
                ``tracer_provider``: a TracerProvider, defaults to global.
                ``create_poll_span``: report a span around each poll, defaults to True
                ``create_process_span``: report a span for processing polled messages, defaults to True
                ``key_processor``: a callable applied to message keys before recording them
                ``key_uses_schema_framing``: strip the schema registry header from message keys
                ``produce_hook``: a callable to be executed just before producing a message
                ``consume_hook``: a callable to be executed just after polling a message
        """
        config = InstrumentationConfig.from_kwargs(**kwargs)
        tracer = _get_tracer(kwargs.get("tracer_provider"))

        self._originals = {}
        self._swap(confluent_kafka, "Producer", AutoInstrumentedProducer)
        self._swap(confluent_kafka, "Consumer", AutoInstrumentedConsumer)

        if config.traces_poll:
            self._wrap(
                AutoInstrumentedConsumer,
                "poll",
                _wrap_poll(tracer, config, process_spans),
            )
            self._wrap(
                AutoInstrumentedConsumer,
                "consume",
                _wrap_poll(tracer, config, process_spans),
            )
            self._wrap(
                AutoInstrumentedConsumer, "close", _wrap_close(process_spans)
            )
        self._wrap(AutoInstrumentedConsumer, "commit", _wrap_commit(tracer))
        self._wrap(
            AutoInstrumentedProducer,
            "produce",
            _select_produce_wrapper(tracer, config),
        )
        return True

    def _swap(self, owner, attribute: str, replacement) -> None:
        self._originals[(owner, attribute)] = getattr(owner, attribute)
        setattr(owner, attribute, replacement)

    def _wrap(self, owner, attribute: str, wrapper) -> None:
        self._originals[(owner, attribute)] = vars(owner)[attribute]
        wrap_function_wrapper(owner, attribute, wrapper)

    def _uninstrument(self, **kwargs):
        for (owner, attribute), original in self._originals.items():
            setattr(owner, attribute, original)
        self._originals = {}
        process_spans.clear()
