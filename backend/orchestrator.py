import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Any

import config
from .errors import GraphError, ProcessorError, ValidationError
from .graph_store import GraphStore
from .node_registry import registry
from .processor import Processor, ProcessorResult
from .resolver import resolve_inputs
from .schemas import Node, NodeKind, NodeState, ResultConfig, new_id

logger = logging.getLogger(__name__)

EventCallback = Callable[[str, Dict[str, Any]], None]


class ProcessingOrchestrator:
    """
    Runs nodes against the Processor and writes the outcome back to the store.

    Each node moves idle -> running -> succeeded | failed on its own; any
    number of different nodes may be running at once. A successful run also
    adds a Result node, placed to the right of the node that produced it,
    carrying the new image so it can be viewed and chained further.

    There is no timeout: a Processor call that never returns leaves its node
    running.
    """

    def __init__(
        self,
        store: GraphStore,
        processor: Processor,
        result_offset_x: Optional[float] = None,
        max_retries: Optional[int] = None,
        on_event: Optional[EventCallback] = None,
    ):
        self.store = store
        self.processor = processor
        self.result_offset_x = config.RESULT_OFFSET_X if result_offset_x is None else result_offset_x
        self.max_retries = max_retries or config.PROCESSOR_MAX_RETRIES
        self.on_event = on_event
        self._tasks: Dict[str, asyncio.Task] = {}

    @property
    def in_flight(self) -> List[str]:
        return list(self._tasks)

    def invoke(self, node_id: str) -> Optional[asyncio.Task]:
        """
        Start processing `node_id` and return the task doing it.

        Returns None without touching the node when it is already running.
        Raises ValidationError, leaving the node unchanged, when its kind
        cannot run or required inputs/prompt are missing. Must be called from
        the event loop that should run the Processor call.
        """
        node = self.store.get_node(node_id)
        # A stored running state with no task behind it (set through an update) does not block
        if node.state == NodeState.RUNNING and node_id in self._tasks:
            logger.info(f"Node {node_id} is already running, ignoring invoke")
            return None

        node_class = registry.get_node_class(node.kind)
        # Inputs are fixed here; later graph edits do not reach this run
        inputs = resolve_inputs(self.store.snapshot(), node_id)
        try:
            node_class.check_ready(node, inputs)
        except ValidationError as e:
            logger.warning(str(e))
            raise

        loop = asyncio.get_running_loop()
        self.store.update_node_data(
            node_id, {"state": NodeState.RUNNING, "error": None, "output": None}
        )
        shared = {"node_id": node_id, "inputs": inputs, "prompt": node.prompt}
        task = loop.create_task(self._run(node_class, node_id, shared))
        self._tasks[node_id] = task
        task.add_done_callback(lambda t: self._forget(node_id, t))

        logger.info(f"Running {node.kind.value} node {node_id} with {len(inputs)} input(s)")
        self._emit("node_start", {"node_id": node_id})
        return task

    async def wait_idle(self) -> None:
        """Wait until no invocation is in flight."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def _run(self, node_class, node_id: str, shared: Dict[str, Any]) -> None:
        run = asyncio.current_task()
        flow_node = node_class(self.processor, max_retries=self.max_retries)
        try:
            await flow_node.run_async(shared)
        except ProcessorError as e:
            self._fail(run, node_id, e.message)
            return
        except Exception as e:
            # Anything the Processor raises stays local to this node
            logger.exception(f"Unexpected error while processing node {node_id}")
            self._fail(run, node_id, str(e) or e.__class__.__name__)
            return

        try:
            self._succeed(run, node_class, node_id, shared)
        except GraphError as e:
            logger.error(f"Could not store result of node {node_id}: {e}")
            self._fail(run, node_id, str(e))

    def _succeed(self, run: asyncio.Task, node_class, node_id: str, shared: Dict[str, Any]) -> None:
        origin = self._current_origin(run, node_id)
        if origin is None:
            return

        result: ProcessorResult = shared["result"]
        prompt = shared["prompt"]
        result_node = Node(
            id=new_id(NodeKind.RESULT.value),
            kind=NodeKind.RESULT,
            position=origin.position.offset(dx=self.result_offset_x),
            config=ResultConfig(
                label=node_class.RESULT_LABEL,
                image=result.artifact,
                prompt=prompt,
                description=result.description or f"{node_class.RESULT_LABEL}: {prompt}",
                generated_at=datetime.now(timezone.utc),
                source_node_id=node_id,
            ),
            output=result.artifact,
            state=NodeState.SUCCEEDED,
        )
        self.store.apply_result(
            node_id,
            {"state": NodeState.SUCCEEDED, "output": result.artifact, "error": None},
            result_node,
        )
        self._emit("node_end", {"node_id": node_id, "result_node_id": result_node.id})

    def _fail(self, run: asyncio.Task, node_id: str, message: str) -> None:
        if self._current_origin(run, node_id) is None:
            return
        logger.error(f"Node {node_id} failed: {message}")
        self.store.update_node_data(
            node_id, {"state": NodeState.FAILED, "output": None, "error": message}
        )
        self._emit("node_error", {"node_id": node_id, "error": message})

    def _current_origin(self, run: asyncio.Task, node_id: str) -> Optional[Node]:
        """The node `run` was started for, or None when its completion no longer applies."""
        node = self.store.find_node(node_id)
        if node is None:
            logger.warning(f"Node {node_id} was removed while running, discarding its result")
            return None
        if self._tasks.get(node_id) is not run:
            logger.warning(f"Node {node_id} was invoked again after a reset, discarding the earlier result")
            return None
        if node.state != NodeState.RUNNING:
            logger.warning(f"Node {node_id} was reset while running, discarding its result")
            return None
        return node

    def _forget(self, node_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(node_id) is task:
            del self._tasks[node_id]

    def _emit(self, event: str, payload: Dict[str, Any]) -> None:
        if not self.on_event:
            return
        try:
            self.on_event(event, payload)
        except Exception as e:
            logger.error(f"Event callback error: {e}")
