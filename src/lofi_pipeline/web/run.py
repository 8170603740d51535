from __future__ import annotations

import uvicorn

from lofi_pipeline.config import get_settings


def main() -> None:
    s = get_settings()
    uvicorn.run(
        "lofi_pipeline.server:app",
        host=str(s.host),
        port=int(s.port),
        reload=False,
    )


if __name__ == "__main__":  # pragma: no cover
    main()
