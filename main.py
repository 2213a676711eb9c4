"""Run the pipeline HTTP API under uvicorn."""
import argparse

import uvicorn

from talentpool.config import settings


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--reload", action="store_true", default=settings.debug, help="Reload on code changes")
    args = parser.parse_args()

    db_target = settings.db.url.rsplit("@", 1)[-1]
    print(f"{settings.app_name} v{settings.version} on {args.host}:{args.port}")
    print(f"Database: {db_target} | embeddings: {settings.embeddings.model_name} ({settings.embeddings.dim}d)")

    uvicorn.run(
        "talentpool.api:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        reload_dirs=["talentpool", "ai", "config"] if args.reload else None,
        log_level=settings.logging.level.lower(),
    )


if __name__ == "__main__":
    main()
