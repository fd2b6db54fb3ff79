"""
Exceptions raised by the pose graph backend.

Resource exhaustion (MemoryError, torch out-of-memory errors) is not wrapped
here: it is fatal and propagates unchanged.
"""
from typing import Optional


class GraphSLAMError(Exception):
    """Base class for pose graph errors."""


class InvalidVertexReference(GraphSLAMError, LookupError):
    """An operation referenced a vertex id that does not exist in the graph."""

    def __init__(self, vertex_id: int, message: Optional[str] = None):
        self.vertex_id = vertex_id
        super().__init__(message or f"Vertex {vertex_id} does not exist")

    def __str__(self) -> str:
        return self.args[0]


class OptimizationDivergence(GraphSLAMError):
    """
    The batch solve did not converge or produced non-finite poses.

    Recoverable: the graph keeps the previously optimized poses and can be
    optimized again later. The solver outcome is available as `result`.
    """

    def __init__(self, message: str, result=None):
        self.result = result
        super().__init__(message)
