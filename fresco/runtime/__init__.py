"""Inference runtime wrappers (ONNX Runtime) and model auto-configuration."""
