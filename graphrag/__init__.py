"""
Foresight — Graph Learning Package

Capability co-occurrence graph, structural importance, node embeddings
and the next-task predictor built on them.
"""

from graphrag.graph_store import CapabilityGraph, CapabilityNode, Edge, GraphSnapshot
from graphrag.embeddings import EmbeddingEngine, EmbeddingTable
from graphrag.predictor import Predictor, PredictedCandidate, PredictionUnavailable
