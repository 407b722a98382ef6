#!/usr/bin/env python3
"""
Entry point for yamisskey-doctor.
Wraps yamisskey_doctor/cli.py to ensure correct import resolution.
"""
import sys
import os

# Ensure project root is in python path
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from yamisskey_doctor.cli import run

if __name__ == "__main__":
    run()
