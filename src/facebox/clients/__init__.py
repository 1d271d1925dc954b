"""Inference engine clients."""

from facebox.clients.onnx_engine import InferenceEngine, OnnxInferenceEngine, RawOutputs


__all__ = ['InferenceEngine', 'OnnxInferenceEngine', 'RawOutputs']
