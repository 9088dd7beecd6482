#!/usr/bin/env python3
"""
Quick runner for Brief Engine
=============================

Usage:
    python -m brief_engine.run
"""

import uvicorn

if __name__ == "__main__":
    print("Starting Brief Engine...")
    print("API docs: http://localhost:8000/docs")
    print("Health:   http://localhost:8000/health")
    print()

    uvicorn.run(
        "brief_engine.api:app",
        host="0.0.0.0",
        port=8000,
        reload=True
    )
