from typing import List

from .schemas import Graph, Artifact


def resolve_inputs(graph: Graph, node_id: str) -> List[Artifact]:
    """
    Collect the outputs feeding `node_id`, in the order its incoming edges
    appear in `graph.edges`.

    Sources that have not produced an output yet are skipped. Two edges from
    the same source yield its artifact twice. An empty list is a normal
    answer, not an error.
    """
    outputs = {n.id: n.output for n in graph.nodes}
    inputs = []
    for edge in graph.edges:
        if edge.target != node_id:
            continue
        artifact = outputs.get(edge.source)
        if artifact is not None:
            inputs.append(artifact)
    return inputs
