"""
asgi.py — ASGI entry point for production servers (uvicorn, gunicorn with uvicorn workers)

Usage:
  uvicorn asgi:application --host 0.0.0.0 --port 8000
  gunicorn -k uvicorn.workers.UvicornWorker asgi:application

The admin job registry and cancel signals live in process memory, so run a
single worker when admin flows are used.
"""

from app import app as application  # noqa: F401

if __name__ == '__main__':
    import uvicorn
    uvicorn.run(application, host='127.0.0.1', port=8000)
