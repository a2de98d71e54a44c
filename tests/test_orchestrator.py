import asyncio
import base64
import unittest

from backend.errors import ValidationError, ProcessorError, NodeNotFoundError
from backend.graph_store import GraphStore
from backend.orchestrator import ProcessingOrchestrator
from backend.processor import Processor, ProcessorResult
from backend.schemas import Artifact, Edge, Node, NodeKind, NodeState, Position


def artifact(data: bytes) -> Artifact:
    return Artifact(mime_type="image/png", payload=base64.b64encode(data).decode("ascii"))


class StubProcessor(Processor):
    """Records calls; optionally blocks on `gate` and fails with `errors`."""

    def __init__(self, result: Artifact = None, errors=None):
        self.result = result or artifact(b"out")
        self.errors = list(errors or [])
        self.calls = []
        self.gate = None

    async def process(self, kind, inputs, prompt):
        self.calls.append((kind, list(inputs), prompt))
        if self.gate is not None:
            await self.gate.wait()
        if self.errors:
            raise self.errors.pop(0)
        return ProcessorResult(artifact=self.result, description=f"done: {prompt}")


class SequencedProcessor(Processor):
    """Hands out one result per call, each call waiting on its own gate."""

    def __init__(self, results):
        self.results = list(results)
        self.gates = [asyncio.Event() for _ in self.results]
        self.calls = 0

    async def process(self, kind, inputs, prompt):
        index = self.calls
        self.calls += 1
        await self.gates[index].wait()
        return ProcessorResult(artifact=self.results[index], description=f"run {index}")


class OrchestratorTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.store = GraphStore()
        self.processor = StubProcessor()
        self.events = []
        self.orchestrator = ProcessingOrchestrator(
            self.store,
            self.processor,
            result_offset_x=400,
            on_event=lambda event, payload: self.events.append((event, payload)),
        )

    def add_upload(self, node_id, output=None):
        if output is None:
            return self.store.add_node(Node(id=node_id, kind=NodeKind.UPLOAD))
        return self.store.add_node(Node(
            id=node_id,
            kind=NodeKind.UPLOAD,
            config={"image": output},
            output=output,
            state=NodeState.SUCCEEDED,
        ))

    def add_edit(self, node_id, prompt="", position=None):
        return self.store.add_node(Node(
            id=node_id,
            kind=NodeKind.EDIT,
            position=position or Position(),
            config={"prompt": prompt},
        ))

    def add_generate(self, node_id, prompt=""):
        return self.store.add_node(Node(id=node_id, kind=NodeKind.GENERATE, config={"prompt": prompt}))

    def result_nodes(self):
        return [n for n in self.store.nodes if n.kind == NodeKind.RESULT]

    def assertOutputMatchesState(self):
        for node in self.store.nodes:
            self.assertEqual(node.output is not None, node.state == NodeState.SUCCEEDED, node.id)


class TestInvoke(OrchestratorTestCase):
    async def test_edit_runs_and_spawns_result_node(self):
        img_a = artifact(b"imgA")
        self.add_upload("u", img_a)
        self.add_edit("e", "add snow", Position(x=100, y=50))
        self.store.add_edge(Edge(source="u", target="e"))

        task = self.orchestrator.invoke("e")
        self.assertEqual(self.store.get_node("e").state, NodeState.RUNNING)
        await task

        edited = self.store.get_node("e")
        self.assertEqual(edited.state, NodeState.SUCCEEDED)
        self.assertEqual(edited.output, self.processor.result)
        self.assertEqual(self.processor.calls, [(NodeKind.EDIT, [img_a], "add snow")])

        results = self.result_nodes()
        self.assertEqual(len(results), 1)
        result = results[0]
        self.assertEqual(result.output, self.processor.result)
        self.assertEqual(result.state, NodeState.SUCCEEDED)
        self.assertEqual(result.position, Position(x=500, y=50))
        self.assertEqual(result.config.image, self.processor.result)
        self.assertEqual(result.config.prompt, "add snow")
        self.assertEqual(result.config.description, "done: add snow")
        self.assertEqual(result.config.label, "Edited Image")
        self.assertEqual(result.config.source_node_id, "e")
        self.assertIsNotNone(result.config.generated_at)
        self.assertFalse([e for e in self.store.edges if result.id in (e.source, e.target)])
        self.assertEqual([e for e, _ in self.events], ["node_start", "node_end"])
        self.assertOutputMatchesState()

    async def test_generate_runs_without_inputs(self):
        self.add_generate("g", "a red fox")
        await self.orchestrator.invoke("g")

        self.assertEqual(self.store.get_node("g").state, NodeState.SUCCEEDED)
        self.assertEqual(self.processor.calls, [(NodeKind.GENERATE, [], "a red fox")])
        self.assertEqual(self.result_nodes()[0].config.label, "Generated Image")

    async def test_generate_without_prompt_is_rejected(self):
        self.add_generate("g", "")
        with self.assertRaises(ValidationError):
            self.orchestrator.invoke("g")
        self.assertEqual(self.store.get_node("g").state, NodeState.IDLE)
        self.assertEqual(self.processor.calls, [])

    async def test_edit_requires_prompt_and_inputs(self):
        self.add_upload("u", artifact(b"a"))
        self.add_edit("no_prompt", "   ")
        self.add_edit("no_inputs", "add snow")
        self.store.add_edge(Edge(source="u", target="no_prompt"))

        for node_id in ("no_prompt", "no_inputs"):
            with self.assertRaises(ValidationError):
                self.orchestrator.invoke(node_id)
            self.assertEqual(self.store.get_node(node_id).state, NodeState.IDLE)
        self.assertEqual(self.processor.calls, [])
        self.assertEqual(self.events, [])

    async def test_edit_with_only_empty_sources_is_rejected(self):
        self.add_upload("empty")
        self.add_edit("e", "add snow")
        self.store.add_edge(Edge(source="empty", target="e"))
        with self.assertRaises(ValidationError):
            self.orchestrator.invoke("e")

    async def test_sources_and_sinks_cannot_run(self):
        self.add_upload("u", artifact(b"a"))
        self.store.add_node(Node(id="r", kind=NodeKind.RESULT))
        for node_id in ("u", "r"):
            with self.assertRaises(ValidationError):
                self.orchestrator.invoke(node_id)
        self.assertEqual(self.store.get_node("u").state, NodeState.SUCCEEDED)

    async def test_unknown_node(self):
        with self.assertRaises(NodeNotFoundError):
            self.orchestrator.invoke("ghost")

    async def test_second_invoke_while_running_is_ignored(self):
        self.add_generate("g", "fox")
        self.processor.gate = asyncio.Event()

        task = self.orchestrator.invoke("g")
        await asyncio.sleep(0)
        self.assertIsNone(self.orchestrator.invoke("g"))
        self.assertEqual(self.orchestrator.in_flight, ["g"])

        self.processor.gate.set()
        await task
        await self.orchestrator.wait_idle()

        self.assertEqual(len(self.processor.calls), 1)
        self.assertEqual(len(self.result_nodes()), 1)
        self.assertEqual(self.orchestrator.in_flight, [])

    async def test_inputs_are_fixed_when_run_starts(self):
        img_a = artifact(b"a")
        self.add_upload("u", img_a)
        self.add_edit("e", "add snow")
        edge = self.store.add_edge(Edge(source="u", target="e"))
        self.processor.gate = asyncio.Event()

        task = self.orchestrator.invoke("e")
        self.store.remove_edge(edge.id)
        self.store.update_node_data("u", {"output": artifact(b"b")})
        self.processor.gate.set()
        await task

        self.assertEqual(self.processor.calls[0][1], [img_a])
        self.assertEqual(self.store.get_node("e").state, NodeState.SUCCEEDED)

    async def test_rerun_replaces_output_and_adds_another_result(self):
        self.add_generate("g", "fox")
        await self.orchestrator.invoke("g")

        self.processor.result = artifact(b"second")
        self.processor.gate = asyncio.Event()
        task = self.orchestrator.invoke("g")
        running = self.store.get_node("g")
        self.assertEqual(running.state, NodeState.RUNNING)
        self.assertIsNone(running.output)
        self.assertOutputMatchesState()

        self.processor.gate.set()
        await task
        self.assertEqual(self.store.get_node("g").output, artifact(b"second"))
        self.assertEqual(len(self.result_nodes()), 2)


class TestFailures(OrchestratorTestCase):
    async def test_processor_error_marks_node_failed(self):
        self.processor.errors = [ProcessorError("quota exceeded")]
        self.add_generate("g", "fox")

        await self.orchestrator.invoke("g")

        node = self.store.get_node("g")
        self.assertEqual(node.state, NodeState.FAILED)
        self.assertEqual(node.error, "quota exceeded")
        self.assertIsNone(node.output)
        self.assertEqual(self.result_nodes(), [])
        self.assertEqual(self.events[-1], ("node_error", {"node_id": "g", "error": "quota exceeded"}))
        self.assertOutputMatchesState()

    async def test_unexpected_exception_is_contained(self):
        self.processor.errors = [RuntimeError("socket closed")]
        self.add_generate("g", "fox")

        await self.orchestrator.invoke("g")

        node = self.store.get_node("g")
        self.assertEqual(node.state, NodeState.FAILED)
        self.assertEqual(node.error, "socket closed")

    async def test_failure_does_not_affect_other_nodes(self):
        self.add_generate("bad", "fox")
        self.add_generate("good", "owl")
        self.processor.errors = [ProcessorError("boom")]

        bad = self.orchestrator.invoke("bad")
        good = self.orchestrator.invoke("good")
        await asyncio.gather(bad, good)

        self.assertEqual(self.store.get_node("bad").state, NodeState.FAILED)
        self.assertEqual(self.store.get_node("good").state, NodeState.SUCCEEDED)
        self.assertEqual(len(self.result_nodes()), 1)

    async def test_retry_after_failure_clears_error(self):
        self.processor.errors = [ProcessorError("boom")]
        self.add_generate("g", "fox")
        await self.orchestrator.invoke("g")

        task = self.orchestrator.invoke("g")
        self.assertIsNone(self.store.get_node("g").error)
        await task

        node = self.store.get_node("g")
        self.assertEqual(node.state, NodeState.SUCCEEDED)
        self.assertIsNone(node.error)

    async def test_max_retries_is_passed_to_the_flow_node(self):
        self.orchestrator.max_retries = 2
        self.processor.errors = [ProcessorError("flaky")]
        self.add_generate("g", "fox")

        await self.orchestrator.invoke("g")

        self.assertEqual(len(self.processor.calls), 2)
        self.assertEqual(self.store.get_node("g").state, NodeState.SUCCEEDED)

    async def test_completion_for_removed_node_is_discarded(self):
        self.add_generate("g", "fox")
        self.processor.gate = asyncio.Event()

        task = self.orchestrator.invoke("g")
        self.store.remove_node("g")
        self.processor.gate.set()
        await task

        self.assertEqual(self.store.nodes, ())

    async def test_completion_after_reset_is_discarded(self):
        self.add_generate("g", "fox")
        self.processor.gate = asyncio.Event()

        task = self.orchestrator.invoke("g")
        self.store.reset_node("g")
        self.processor.gate.set()
        await task

        self.assertEqual(self.store.get_node("g").state, NodeState.IDLE)
        self.assertEqual(self.result_nodes(), [])

    async def test_earlier_run_cannot_overwrite_run_started_after_reset(self):
        processor = SequencedProcessor([artifact(b"run0"), artifact(b"run1")])
        self.orchestrator.processor = processor
        self.add_generate("g", "fox")

        first = self.orchestrator.invoke("g")
        self.store.reset_node("g")
        second = self.orchestrator.invoke("g")
        self.assertIsNotNone(second)

        processor.gates[0].set()
        await first
        node = self.store.get_node("g")
        self.assertEqual(node.state, NodeState.RUNNING)
        self.assertIsNone(node.output)
        self.assertEqual(self.result_nodes(), [])

        processor.gates[1].set()
        await second
        node = self.store.get_node("g")
        self.assertEqual(node.state, NodeState.SUCCEEDED)
        self.assertEqual(node.output, artifact(b"run1"))
        results = self.result_nodes()
        self.assertEqual(len(results), 1)
        self.assertEqual(results[0].output, artifact(b"run1"))
        self.assertOutputMatchesState()

    async def test_discarded_failure_is_not_logged_as_error(self):
        self.processor.errors = [ProcessorError("boom")]
        self.processor.gate = asyncio.Event()
        self.add_generate("g", "fox")

        task = self.orchestrator.invoke("g")
        self.store.reset_node("g")
        with self.assertLogs("backend.orchestrator", level="WARNING") as logs:
            self.processor.gate.set()
            await task

        self.assertEqual([r.levelname for r in logs.records], ["WARNING"])
        self.assertEqual(self.store.get_node("g").state, NodeState.IDLE)
        self.assertIsNone(self.store.get_node("g").error)

    async def test_stored_running_state_without_task_does_not_block(self):
        self.add_generate("g", "fox")
        self.store.update_node_data("g", {"state": NodeState.RUNNING})

        task = self.orchestrator.invoke("g")
        self.assertIsNotNone(task)
        await task

        self.assertEqual(self.store.get_node("g").state, NodeState.SUCCEEDED)
        self.assertEqual(len(self.result_nodes()), 1)

    async def test_event_callback_errors_are_swallowed(self):
        def broken(event, payload):
            raise RuntimeError("socket gone")

        self.orchestrator.on_event = broken
        self.add_generate("g", "fox")
        await self.orchestrator.invoke("g")
        self.assertEqual(self.store.get_node("g").state, NodeState.SUCCEEDED)


if __name__ == '__main__':
    unittest.main()
