"""Placeholder HTML shells for the browser-facing routes.

The real UI is rendered elsewhere; these exist so guarded paths have a
handler to pass through to.
"""

from html import escape

from fastapi import APIRouter, Request
from fastapi.responses import HTMLResponse


page_router = APIRouter()


def _shell(title: str, path: str) -> HTMLResponse:
    body = f"""
<!doctype html>
<html lang="en">
  <head>
    <meta charset="utf-8" />
    <meta name="viewport" content="width=device-width, initial-scale=1" />
    <title>Barforge | {escape(title)}</title>
  </head>
  <body>
    <div id="main" data-route="{escape(path)}"></div>
  </body>
</html>
    """
    return HTMLResponse(body, status_code=200)


@page_router.get("/", response_class=HTMLResponse)
def home(request: Request):
    return _shell("Home", request.url.path)


@page_router.get("/login", response_class=HTMLResponse)
def login_page(request: Request):
    return _shell("Sign in", request.url.path)


@page_router.get("/dashboard", response_class=HTMLResponse)
def dashboard_page(request: Request):
    return _shell("Dashboard", request.url.path)


@page_router.get("/upload", response_class=HTMLResponse)
def upload_page(request: Request):
    return _shell("Upload", request.url.path)


@page_router.get("/settings", response_class=HTMLResponse)
@page_router.get("/settings/{rest:path}", response_class=HTMLResponse)
def settings_page(request: Request):
    return _shell("Settings", request.url.path)


@page_router.get("/admin", response_class=HTMLResponse)
@page_router.get("/admin/{rest:path}", response_class=HTMLResponse)
def admin_page(request: Request):
    return _shell("Admin", request.url.path)
