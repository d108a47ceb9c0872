#!/usr/bin/env python3
"""
Local development server for the Optimizer Intelligence API.
Runs against a local sqlite file unless DATABASE_URL or SUPABASE_* is configured.
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
if not os.getenv('DATABASE_URL') and not os.getenv('SUPABASE_DB_PASSWORD'):
    print("No DATABASE_URL or Supabase credentials; using local sqlite (SQLITE_PATH, default ./optimizer.db)")
    print("Create the schema first with: alembic upgrade head")

if __name__ == "__main__":
    import uvicorn

    print("Starting Optimizer Intelligence API")
    print("Docs: http://localhost:8000/docs")
    print("Health Check: http://localhost:8000/health")
    print("Metrics: http://localhost:8000/metrics")
    print("Press Ctrl+C to stop\n")

    uvicorn.run(
        "optimizer_intelligence.api.main:app",
        host=os.getenv("API_HOST", "0.0.0.0"),
        port=int(os.getenv("API_PORT", "8000")),
        reload=True,
        log_level="info"
    )
