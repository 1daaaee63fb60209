#!/usr/bin/env python3
"""
Local development server for the ERP sync API.
Run a Celery worker and beat alongside it for order sync and scheduled jobs:

    celery -A erp_sync.infrastructure.celery_app worker -l info
    celery -A erp_sync.infrastructure.celery_app beat -l info
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

os.environ.setdefault('APP_ENV', 'development')
if not os.getenv('API_SECRET') or not os.getenv('AGENT_SECRET'):
    print("WARNING: API_SECRET / AGENT_SECRET not set, admin and agent calls will be rejected")
    print("Example: API_SECRET=changeme AGENT_SECRET=changeme python dev_server.py")

if __name__ == "__main__":
    import uvicorn

    print("Starting ERP sync API")
    print("Docs: http://localhost:8000/docs")
    print("Health Check: http://localhost:8000/health")
    print("Press Ctrl+C to stop\n")

    uvicorn.run(
        "erp_sync.api.main:app",
        host=os.getenv("API_HOST", "0.0.0.0"),
        port=int(os.getenv("API_PORT", "8000")),
        reload=True,
        log_level="info"
    )
