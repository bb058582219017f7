#!/usr/bin/env python3
"""Run the award-workflow operations API.

Usage:
    python run_ui.py                  # Start on default port 5000
    python run_ui.py --port 8080      # Start on custom port
    python run_ui.py --no-sweeper     # Serve without the background SLA sweep
"""

import argparse


def main():
    parser = argparse.ArgumentParser(description="Award Workflow Operations API")
    parser.add_argument("--port", type=int, default=5000, help="Port to run on (default: 5000)")
    parser.add_argument("--host", type=str, default="0.0.0.0", help="Host to bind to (default: 0.0.0.0)")
    parser.add_argument("--no-sweeper", action="store_true", help="Don't start the background SLA sweeper")
    args = parser.parse_args()

    from src.ui.app import DB_PATH, run_server

    print(f"""
╔══════════════════════════════════════════════════════════════════════╗
║               Award Workflow - Operations API                        ║
╠══════════════════════════════════════════════════════════════════════╣
║                                                                      ║
║  API URL: http://localhost:{args.port:<5}                                     ║
║                                                                      ║
║  Endpoints:                                                          ║
║  GET  /api/queue                 prioritized work queue              ║
║  GET  /api/applications          all applications                    ║
║  POST /api/applications/<id>/transition   (X-Role, X-User headers)   ║
║  POST /api/sweep                 run an SLA sweep now                ║
║                                                                      ║
║  Press Ctrl+C to stop the server                                     ║
╚══════════════════════════════════════════════════════════════════════╝
""")
    print(f"Database: {DB_PATH}")

    run_server(host=args.host, port=args.port, debug=False, with_sweeper=not args.no_sweeper)


if __name__ == "__main__":
    main()
