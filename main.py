#!/usr/bin/env python3
"""
Main Entry Point

Pipeline Coordinator - resumable, checkpointed stage execution
"""

import sys

from pipeline_coordinator.cli import main

if __name__ == "__main__":
    sys.exit(main())
