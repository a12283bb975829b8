"""Preview-mode rewrites of a generated workspace.

The preview runs without real sign-in: ``src/auth.ts`` is replaced so ``auth()``
returns a fixed "Preview User" session when ``PREVIEW_MODE=true``, and
``src/middleware.ts`` passes every request through in that mode. Both rewrites
overwrite the generated file and are skipped when the file already handles
``PREVIEW_MODE``.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Mapping

from genbuilder.core.logging import job_extra

log = logging.getLogger(__name__)

PREVIEW_FLAG = "PREVIEW_MODE"

PREVIEW_AUTH_TS = """import NextAuth from "next-auth";
import authConfig from "./auth.config";

const nextAuth = NextAuth(authConfig);

export const handlers = nextAuth.handlers;
export const signIn = nextAuth.signIn;
export const signOut = nextAuth.signOut;

// In preview mode, return a fake session so all auth checks pass
const previewSession = {
  user: { id: "preview", email: "admin@example.com", name: "Preview User" },
  expires: new Date(Date.now() + 86400000).toISOString(),
};

export const auth = process.env.PREVIEW_MODE === "true"
  ? async () => previewSession
  : nextAuth.auth;
"""

PREVIEW_MIDDLEWARE_TS = """import { NextResponse } from "next/server";
import type { NextRequest } from "next/server";

export function middleware(req: NextRequest) {
  if (process.env.PREVIEW_MODE === "true") return NextResponse.next();

  const path = req.nextUrl.pathname;

  // Skip auth pages and API routes (APIs self-protect via session checks)
  if (path.startsWith("/auth") || path.startsWith("/api")) {
    return NextResponse.next();
  }

  const hasSession =
    req.cookies.has("authjs.session-token") ||
    req.cookies.has("__Secure-authjs.session-token");

  if (!hasSession) {
    return NextResponse.redirect(new URL("/auth", req.url));
  }

  return NextResponse.next();
}

export const config = {
  matcher: ["/((?!_next/static|_next/image|favicon.ico).*)"],
};
"""


def _rewrite(path: Path, content: str) -> bool:
    if not path.is_file():
        return False
    if PREVIEW_FLAG in path.read_text(encoding="utf-8"):
        return False
    path.write_text(content, encoding="utf-8")
    return True


def patch_auth(workspace: Path) -> bool:
    return _rewrite(workspace / "src" / "auth.ts", PREVIEW_AUTH_TS)


def patch_middleware(workspace: Path) -> bool:
    return _rewrite(workspace / "src" / "middleware.ts", PREVIEW_MIDDLEWARE_TS)


def patch_workspace_for_preview(job_id: str, workspace: Path) -> list[str]:
    """Apply every preview rewrite; returns the files that changed."""
    changed = []
    if patch_auth(workspace):
        changed.append("src/auth.ts")
    if patch_middleware(workspace):
        changed.append("src/middleware.ts")
    if changed:
        log.info("Patched %s for preview mode", ", ".join(changed), extra=job_extra(job_id))
    return changed


def build_preview_env(
    base: Mapping[str, str],
    port: int,
    database_url: str,
    auth_secret: str,
    blocked: Iterable[str] = (),
    blocked_prefixes: Iterable[str] = (),
) -> dict[str, str]:
    """Environment for the dev server: host secrets stripped, preview settings forced."""
    blocked = set(blocked)
    prefixes = tuple(blocked_prefixes)
    env = {
        key: value for key, value in base.items()
        if key not in blocked and not (prefixes and key.startswith(prefixes))
    }
    env.update({
        "DATABASE_URL": database_url,
        "AUTH_SECRET": auth_secret,
        "AUTH_TRUST_HOST": "true",
        PREVIEW_FLAG: "true",
        "PORT": str(port),
    })
    return env
