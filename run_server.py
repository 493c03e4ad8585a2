#!/usr/bin/env python3
"""
Forum API Server
Serves the revisioned forum API with uvicorn
"""
import sys

import uvicorn

from config import DB_PATH, DEFAULT_HOST, DEFAULT_PORT, LOG_LEVEL


def main():
    print("Starting forum server...")
    print(f"Database: {DB_PATH}")
    print("Available at:")
    print(f"  - http://{DEFAULT_HOST}:{DEFAULT_PORT}")
    print(f"  - API docs: http://{DEFAULT_HOST}:{DEFAULT_PORT}/docs")
    print()
    print("Press Ctrl+C to stop the server")

    try:
        from app import app

        uvicorn.run(
            app,
            host=DEFAULT_HOST,
            port=DEFAULT_PORT,
            log_level=LOG_LEVEL.lower(),
            reload=False,
            access_log=True
        )
    except KeyboardInterrupt:
        print("\nServer stopped by user")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
