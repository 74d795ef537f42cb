"""Screen state for the single-screen classification flow.

The session tracks two independent flags, whether an image is selected and
whether a label has been published, and moves between them only in response
to user actions (select an image, press predict).

Inference runs on the InferencePool; its outcome comes back as a
ClassificationEvent and is applied by _publish on the event-loop thread,
which is the only writer of the label.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from lesiondetector.pipeline import ClassificationCompleted, ClassificationEvent

if TYPE_CHECKING:
    from collections.abc import Awaitable

    import numpy as np
    from numpy.typing import NDArray

    from lesiondetector.ml.inference import InferencePool
    from lesiondetector.pipeline import ClassificationPipeline

logger = logging.getLogger(__name__)

SUBSCRIBER_QUEUE_SIZE = 16


@dataclass(frozen=True)
class SessionState:
    """Snapshot of what the screen shows."""

    has_image: bool
    label: str | None
    confidence: float | None

    @property
    def classified(self) -> bool:
        return self.label is not None


class ClassificationSession:
    def __init__(self, pipeline: ClassificationPipeline, pool: InferencePool) -> None:
        self._pipeline = pipeline
        self._pool = pool
        self._image: NDArray[np.uint8] | None = None
        self._label: str | None = None
        self._confidence: float | None = None
        self._subscribers: list[asyncio.Queue[ClassificationEvent]] = []

    @property
    def state(self) -> SessionState:
        return SessionState(
            has_image=self._image is not None,
            label=self._label,
            confidence=self._confidence,
        )

    def select_image(self, image: NDArray[np.uint8]) -> None:
        """Select a new image. The last published label stays visible."""
        self._image = image
        logger.info("Image selected (%dx%d)", image.shape[1], image.shape[0])

    async def acquire(self, pending: Awaitable[NDArray[np.uint8] | None]) -> bool:
        """Await one image from an acquisition and select it.

        Returns False, leaving state unchanged, when the acquisition yields nothing.
        """
        image = await pending
        if image is None:
            return False
        self.select_image(image)
        return True

    async def predict(self) -> ClassificationEvent | None:
        """Classify the selected image and publish the outcome.

        A no-op returning None when no image is selected.

        Raises:
            PoolBusyError: If another inference is still running.
        """
        image = self._image
        if image is None:
            return None
        event = await self._pool.run(self._pipeline.classify, image)
        if event is not None:
            self._publish(event)
        return event

    def subscribe(self, maxsize: int = SUBSCRIBER_QUEUE_SIZE) -> asyncio.Queue[ClassificationEvent]:
        """Return a queue that receives every event published from now on.

        A full queue drops its oldest event to make room for the newest.
        """
        queue: asyncio.Queue[ClassificationEvent] = asyncio.Queue(maxsize=maxsize)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[ClassificationEvent]) -> None:
        self._subscribers.remove(queue)

    def _publish(self, event: ClassificationEvent) -> None:
        if isinstance(event, ClassificationCompleted):
            self._label = event.label
            self._confidence = event.confidence
        for queue in self._subscribers:
            if queue.full():
                dropped = queue.get_nowait()
                logger.debug("Subscriber queue full, dropped %s", type(dropped).__name__)
            queue.put_nowait(event)
