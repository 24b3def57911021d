#!/usr/bin/env python3
"""
Mock upstream API for trying the proxy without real credentials.

Point a profile at it:

    [apis.mock]
    endpoint = "http://localhost:9001"
    auth_type = "bearer"
    token = "mock-token"

Routes:
- GET  /users/{login} - GitHub-style user object
- GET  /echo          - echoes the query string and the credential headers it received
- POST /echo          - echoes the JSON body as well
- GET  /text          - plain text response

Run with: python scripts/mock_upstream.py
Listens on: http://localhost:9001
"""
from __future__ import annotations

from datetime import datetime

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse

app = FastAPI(title="Mock Upstream API", description="Test server for htmz-proxy")

CREDENTIAL_HEADERS = ("authorization", "x-api-key")


def log_request(request: Request):
    """Log incoming calls, showing whether a credential arrived."""
    timestamp = datetime.now().strftime("%H:%M:%S")
    auth = "yes" if any(h in request.headers for h in CREDENTIAL_HEADERS) else "no"
    print(f"[{timestamp}] {request.method} {request.url.path} | credential header: {auth}")


@app.get("/users/{login}")
async def user(login: str, request: Request):
    log_request(request)
    return JSONResponse({
        "login": login,
        "id": 583231,
        "name": "The Octocat",
        "public_repos": 8,
    })


@app.api_route("/echo", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
async def echo(request: Request):
    log_request(request)
    body = None
    if request.method in ("POST", "PUT", "PATCH"):
        raw = await request.body()
        body = raw.decode("utf-8", errors="replace")
    return JSONResponse({
        "method": request.method,
        "query": dict(request.query_params),
        "credential_headers": {h: request.headers.get(h) for h in CREDENTIAL_HEADERS if h in request.headers},
        "body": body,
    })


@app.get("/text")
async def text(request: Request):
    log_request(request)
    return PlainTextResponse("plain text from upstream")


if __name__ == "__main__":
    print("🚀 Starting Mock Upstream API on http://localhost:9001")
    uvicorn.run(app, host="127.0.0.1", port=9001)
