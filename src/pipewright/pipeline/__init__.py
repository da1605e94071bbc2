"""
pipewright.pipeline - Pipeline Documents
==========================================

Loading and validation of declarative pipeline documents.
"""

from pipewright.pipeline.loader import load_pipeline, parse_pipeline

__all__ = ["load_pipeline", "parse_pipeline"]
