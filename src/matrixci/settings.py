from __future__ import annotations
import os

CACHE_DIR = os.environ.get("MATRIXCI_CACHE_DIR", ".matrixci/cache")
ARTIFACT_DIR = os.environ.get("MATRIXCI_ARTIFACT_DIR", "_output")
PIPELINE_FILE = os.environ.get("MATRIXCI_PIPELINE")
