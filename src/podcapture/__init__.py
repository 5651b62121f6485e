"""
podcapture — per-node packet capture agent.

Watches the pods scheduled on this node and keeps one tcpdump
process running for every pod that carries the capture annotation.
Remove the annotation (or the pod) and the capture stops and its
files are cleaned up.
"""

import os

__version__ = "0.1.0"

CAPTURE_DIR = os.environ.get("PODCAPTURE_CAPTURE_DIR", "/captures")
ANNOTATION_KEY = "tcpdump.antrea.io"
