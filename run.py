#!/usr/bin/env python3
"""
Device Repair Workflow Entry Point

Starts the FastAPI server with the repair workflow and approval core.
"""

import sys

from repair_core.api import run_server
from repair_core.config import get_config
from repair_core.logging_config import setup_logging


if __name__ == "__main__":
    settings = get_config()
    setup_logging(settings.log_level, fmt=settings.log_format)

    print("🔧 Starting Device Repair Workflow API...")
    print(f"💾 Storage: {settings.database_url}")
    print(f"🌐 API available at: http://localhost:{settings.api_port}")
    print(f"📚 Documentation at: http://localhost:{settings.api_port}/docs")
    print()

    try:
        run_server(debug=False)
    except KeyboardInterrupt:
        print("\n👋 Shutting down Device Repair Workflow API...")
    except Exception as e:
        print(f"❌ Error starting server: {e}")
        sys.exit(1)
