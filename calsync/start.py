"""Calendar sync service launcher: starts Uvicorn."""
from __future__ import annotations
import os


def main() -> None:
    import uvicorn

    uvicorn.run(
        "calsync.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000"))
    )


if __name__ == "__main__":
    main()
