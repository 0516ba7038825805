#!/usr/bin/env python3
"""
Quick runner for the Observatório hosted functions
==================================================

Usage:
    python -m observatorio.run
    # or
    python observatorio/run.py
"""

import logging

import uvicorn

from observatorio.config import get_settings

if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    for warning in get_settings().validate_deployment():
        logging.getLogger("observatorio").warning(warning)

    print("Starting Observatório functions...")
    print("API docs: http://localhost:8888/docs")
    print("Health:   http://localhost:8888/health")
    print()

    uvicorn.run(
        "observatorio.api:app",
        host="0.0.0.0",
        port=8888,
        reload=True
    )
