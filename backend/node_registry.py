from typing import Dict, Type, List

from .nodes.base import BasePlatformNode, NodeSchema
from .nodes.image import UploadNode, ResultNode, EditImageNode, GenerateImageNode
from .schemas import NodeKind


class NodeRegistry:
    def __init__(self):
        self.node_classes: Dict[NodeKind, Type[BasePlatformNode]] = {}

        self.register(UploadNode)
        self.register(EditImageNode)
        self.register(GenerateImageNode)
        self.register(ResultNode)

        missing = [k.value for k in NodeKind if k not in self.node_classes]
        if missing:
            raise RuntimeError(f"No node class registered for kind(s): {', '.join(missing)}")

    def register(self, cls):
        if getattr(cls, "KIND", None) is not None:
            self.node_classes[cls.KIND] = cls

    def get_node_class(self, kind: NodeKind) -> Type[BasePlatformNode]:
        return self.node_classes[NodeKind(kind)]

    def get_all_metadata(self) -> List[NodeSchema]:
        return [cls.get_schema() for cls in self.node_classes.values()]


registry = NodeRegistry()
