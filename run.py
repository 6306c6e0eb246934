#!/usr/bin/env python3
"""
Rental Payments API Entry Point

Starts the FastAPI server with settings from RENTAL_* environment variables.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from rental_core.api import run_server
from rental_core.config import get_config


if __name__ == "__main__":
    cfg = get_config()
    print("🏠 Starting Rental Payments API...")
    print(f"💰 Default currency: {cfg.default_currency}")
    print(f"🗄️  Storage: {cfg.storage_backend} ({cfg.database_path})")
    print(f"🌐 API available at: http://localhost:{cfg.api_port}")
    print(f"📚 Documentation at: http://localhost:{cfg.api_port}/docs")
    print()

    try:
        run_server()
    except KeyboardInterrupt:
        print("\n👋 Shutting down Rental Payments API...")
    except Exception as e:
        print(f"❌ Error starting server: {e}")
        sys.exit(1)
