from typing import List, Dict

from pocketflow import AsyncNode
from pydantic import BaseModel

from ..errors import ValidationError
from ..schemas import Node, NodeKind, Artifact


class NodeSchema(BaseModel):
    type: str
    description: str
    inputs: List[str] = ["default"]
    outputs: List[str] = ["default"]
    params: Dict[str, str] = {}  # param_name: type (string, image, datetime)
    invocable: bool = False


class BasePlatformNode:
    """Mixin carrying palette metadata and the readiness rule of a node kind"""
    KIND: NodeKind = None
    DESCRIPTION = "Base Node"
    INPUTS = ["default"]
    OUTPUTS = ["default"]
    PARAMS = {}
    INVOCABLE = False

    @classmethod
    def get_schema(cls) -> NodeSchema:
        return NodeSchema(
            type=cls.KIND.value,
            description=cls.DESCRIPTION,
            inputs=cls.INPUTS,
            outputs=cls.OUTPUTS,
            params=cls.PARAMS,
            invocable=cls.INVOCABLE,
        )

    @classmethod
    def check_ready(cls, node: Node, inputs: List[Artifact]) -> None:
        """Raise ValidationError unless `node` can be run with `inputs`."""
        if not cls.INVOCABLE:
            raise ValidationError(node.id, f"'{cls.KIND.value}' nodes cannot be run")


class ProcessingNode(BasePlatformNode, AsyncNode):
    """
    One Processor call, run as a pocketflow node.

    The orchestrator fills `shared` with the snapshot taken when the run was
    accepted ("inputs", "prompt"); post leaves the ProcessorResult under
    shared["result"]. Failures propagate out of run_async once the retries
    are used up.
    """
    INVOCABLE = True
    RESULT_LABEL = "Generated Image"

    def __init__(self, processor, max_retries: int = 1, wait: float = 0):
        super().__init__(max_retries=max_retries, wait=wait)
        self.processor = processor

    async def prep_async(self, shared):
        return {"inputs": list(shared.get("inputs", [])), "prompt": shared.get("prompt", "")}

    async def exec_async(self, prep_res):
        return await self.processor.process(self.KIND, prep_res["inputs"], prep_res["prompt"])

    async def post_async(self, shared, prep_res, exec_res):
        shared["result"] = exec_res
        return None
