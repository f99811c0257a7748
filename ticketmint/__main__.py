import argparse
import os

import uvicorn


def main():
    ap = argparse.ArgumentParser(
        description="Run the ticketmint API (ticket issuance, claim, gate check-in)"
    )
    ap.add_argument("--host", default=os.getenv("HOST", "127.0.0.1"))
    ap.add_argument("--port", type=int, default=int(os.getenv("PORT", "8000")))
    ap.add_argument(
        "--workers", type=int, default=1,
        help="rate limits and the audit ring are per process",
    )
    args = ap.parse_args()

    uvicorn.run(
        "ticketmint.server:app",
        host=args.host,
        port=args.port,
        workers=args.workers,
        log_level="warning",
    )


if __name__ == "__main__":
    main()
