#!/usr/bin/env python3
"""
Local development server for the signal stats engine.
Serves the admin/read API; set ENGINE_RUNNER=thread to run the event
applier in-process instead of on a Celery worker.
"""

import os
import sys
from pathlib import Path

# Load environment variables from .env file
from dotenv import load_dotenv
load_dotenv()

# Add src to Python path
current_dir = Path(__file__).parent
src_dir = current_dir / "src"
sys.path.insert(0, str(src_dir))

# Set local development environment
os.environ.setdefault('ENVIRONMENT', 'development')
os.environ.setdefault('DATABASE_URL', 'sqlite:///./signal_engine.db')

if __name__ == "__main__":
    import uvicorn
    from signal_engine.infrastructure.db import Base, engine
    import signal_engine.models.tables  # noqa: F401

    # sqlite dev database; use `alembic upgrade head` for real deployments
    Base.metadata.create_all(engine)

    print("Starting signal stats engine API")
    print("Docs: http://localhost:8000/docs")
    print("Engine health: http://localhost:8000/engine/health")
    print("Start the applier: POST http://localhost:8000/engine/initialize")
    print("Press Ctrl+C to stop\n")

    uvicorn.run(
        "signal_engine.api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=False,
        log_level="info"
    )
