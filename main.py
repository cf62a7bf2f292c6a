"""
Root entrypoint for local development:
    uvicorn main:app --reload
    python main.py

Production runs `uvicorn devicegate.main:app` behind the proxy that
sets X-Forwarded-For.
"""

from devicegate.core.config import settings
from devicegate.main import app  # noqa: F401

if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="127.0.0.1", port=8000, reload=settings.DEBUG)
