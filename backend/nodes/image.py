from typing import List

from .base import BasePlatformNode, ProcessingNode
from ..errors import ValidationError
from ..schemas import Node, NodeKind, Artifact


class UploadNode(BasePlatformNode):
    """Pure source: holds an uploaded image, never runs."""
    KIND = NodeKind.UPLOAD
    DESCRIPTION = "Upload an image to feed other nodes"
    INPUTS = []
    PARAMS = {"image": "image", "file_name": "string"}


class ResultNode(BasePlatformNode):
    """Pure sink for display and export. Its output can feed further nodes."""
    KIND = NodeKind.RESULT
    DESCRIPTION = "Display or download a produced image"
    INPUTS = []
    PARAMS = {
        "image": "image",
        "prompt": "string",
        "description": "string",
        "generated_at": "datetime",
    }


class EditImageNode(ProcessingNode):
    KIND = NodeKind.EDIT
    DESCRIPTION = "Edit or merge connected images with a text prompt"
    PARAMS = {"prompt": "string"}
    RESULT_LABEL = "Edited Image"

    @classmethod
    def check_ready(cls, node: Node, inputs: List[Artifact]) -> None:
        super().check_ready(node, inputs)
        if not node.prompt.strip():
            raise ValidationError(node.id, "an editing prompt is required")
        if not inputs:
            raise ValidationError(node.id, "at least one connected image is required")


class GenerateImageNode(ProcessingNode):
    KIND = NodeKind.GENERATE
    DESCRIPTION = "Generate an image from a text prompt"
    INPUTS = []
    PARAMS = {"prompt": "string"}
    RESULT_LABEL = "Generated Image"

    @classmethod
    def check_ready(cls, node: Node, inputs: List[Artifact]) -> None:
        super().check_ready(node, inputs)
        if not node.prompt.strip():
            raise ValidationError(node.id, "a prompt is required")
