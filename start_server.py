#!/usr/bin/env python3
"""
Server startup script for running the Restaurant Discounts API locally
"""

import sys

import uvicorn

from config import settings


def main():
    """Start the FastAPI server"""
    print("Starting Restaurant Discounts API...")
    print("=" * 60)
    print(f"Serving at http://{settings.HOST}:{settings.PORT}")
    print("   • GET  /docs - Interactive API docs")
    print("   • POST /sessions - Start a customer verification")
    print("   Press Ctrl+C to stop")
    print("=" * 60)

    try:
        uvicorn.run(
            "main:app",
            host=settings.HOST,
            port=settings.PORT,
            log_level=settings.LOG_LEVEL.lower(),
            reload=False,
        )
    except Exception as e:
        print(f"Server startup failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
