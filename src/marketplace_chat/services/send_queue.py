"""Per-conversation outbound queue keeping sends in compose order."""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict

import structlog

logger = structlog.get_logger()


@dataclass
class QueuedSend:
    """A send request waiting for its turn in a conversation."""

    conversation_id: str
    task: Callable[..., Awaitable[Any]]
    args: tuple
    kwargs: dict
    future: asyncio.Future
    sequence_number: int


class OutboundQueue:
    """Dispatches requests one at a time per conversation.

    Requests of different conversations run concurrently; requests of one
    conversation run strictly in enqueue order, each bounded by
    ``send_timeout`` seconds.
    """

    def __init__(self, send_timeout: float = 30.0) -> None:
        self.send_timeout = send_timeout
        self._lock = asyncio.Lock()
        self._queues: Dict[str, asyncio.Queue] = {}
        self._workers: Dict[str, asyncio.Task] = {}
        self._sequence_counters: Dict[str, int] = {}

    async def _get_queue(self, conversation_id: str) -> asyncio.Queue:
        """Get or create the queue and worker for a conversation."""
        async with self._lock:
            if conversation_id not in self._queues:
                self._queues[conversation_id] = asyncio.Queue()
                self._sequence_counters[conversation_id] = 0
                self._workers[conversation_id] = asyncio.create_task(self._process_queue(conversation_id))
            return self._queues[conversation_id]

    async def _process_queue(self, conversation_id: str) -> None:
        queue = self._queues[conversation_id]
        try:
            while True:
                request = await queue.get()
                try:
                    if request.future.done():
                        continue
                    result = await asyncio.wait_for(
                        request.task(*request.args, **request.kwargs),
                        timeout=self.send_timeout,
                    )
                    if not request.future.done():
                        request.future.set_result(result)
                except asyncio.TimeoutError:
                    logger.error(
                        "send_timeout",
                        conversation_id=conversation_id,
                        sequence=request.sequence_number,
                    )
                    if not request.future.done():
                        request.future.set_exception(TimeoutError("Send timed out"))
                except asyncio.CancelledError:
                    if not request.future.done():
                        request.future.cancel()
                    raise
                except Exception as e:
                    if not request.future.done():
                        request.future.set_exception(e)
                finally:
                    queue.task_done()
        except asyncio.CancelledError:
            logger.info("outbound_worker_cancelled", conversation_id=conversation_id)
            raise

    async def enqueue(
        self,
        conversation_id: str,
        task: Callable[..., Awaitable[Any]],
        *args: Any,
        **kwargs: Any,
    ) -> Any:
        """Enqueue a request and wait for its result."""
        queue = await self._get_queue(conversation_id)
        async with self._lock:
            sequence_number = self._sequence_counters[conversation_id]
            self._sequence_counters[conversation_id] += 1

        future = asyncio.get_running_loop().create_future()
        await queue.put(
            QueuedSend(
                conversation_id=conversation_id,
                task=task,
                args=args,
                kwargs=kwargs,
                future=future,
                sequence_number=sequence_number,
            )
        )
        return await future

    async def cleanup(self) -> None:
        """Cancel workers and fail whatever is still queued."""
        async with self._lock:
            workers = list(self._workers.values())
            for worker in workers:
                worker.cancel()
            if workers:
                await asyncio.gather(*workers, return_exceptions=True)

            for queue in self._queues.values():
                while not queue.empty():
                    request = queue.get_nowait()
                    if not request.future.done():
                        request.future.cancel()
            self._queues.clear()
            self._workers.clear()
            self._sequence_counters.clear()
            logger.info("outbound_queue_cleaned_up")
