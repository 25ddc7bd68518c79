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

from logging import getLogger
from typing import Any, Dict, NamedTuple

from opentelemetry import context, trace
from opentelemetry.trace.span import Span

_LOG = getLogger(__name__)


class _PendingProcessSpan(NamedTuple):
    span: Span
    # restores the context that was current before the span
    token: Any


class ProcessSpanTracker:
    """Keeps the open ``process`` span of every instrumented consumer

    A process span starts when ``poll`` hands messages to the application
    and covers whatever the application does with them. librdkafka gives no
    "done processing" signal, so the span ends when the application polls
    the same consumer again. While pending, the span is the current span.
    Ending it restores the context that was current when it started.

    Consumers are tracked by identity only, the tracker holds no reference
    to them. Access is not synchronised: like librdkafka itself, a consumer
    is expected to be polled from one thread.
    """

    def __init__(self) -> None:
        self._pending: Dict[int, _PendingProcessSpan] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, consumer) -> bool:
        return id(consumer) in self._pending

    def start(self, consumer, span: Span) -> None:
        """Make ``span`` current and keep it pending for ``consumer``"""
        # at most one pending span per consumer
        self.end(consumer)

        token = context.attach(trace.set_span_in_context(span))
        self._pending[id(consumer)] = _PendingProcessSpan(span, token)

    def end(self, consumer) -> bool:
        """End the pending span of ``consumer``, if any

        Returns:
            whether a span was pending.
        """
        pending = self._pending.pop(id(consumer), None)
        if pending is None:
            return False

        pending.span.end()
        context.detach(pending.token)
        return True

    def clear(self) -> None:
        if self._pending:
            _LOG.debug(
                "Ending %d pending process span(s)", len(self._pending)
            )

        # newest first, the context restored last is the oldest one saved
        while self._pending:
            _, pending = self._pending.popitem()
            pending.span.end()
            context.detach(pending.token)


process_spans = ProcessSpanTracker()
