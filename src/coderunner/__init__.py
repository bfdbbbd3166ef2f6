"""Code runner service package.

This package compiles untrusted submissions in C, C++, Java or Python and
runs them as resource-limited subprocesses whose output is streamed to a
browser client, with stdin relayed back and blocking reads announced.

The top-level modules include:

* ``config`` – configuration handling for environment variables.
* ``models`` – Pydantic models defining request, response and message schemas.
* ``workspace`` – per-session directories for submitted files.
* ``compiler`` – language-specific compile steps and diagnostics.
* ``launcher`` – resource-limited process spawning.
* ``session`` – the execution session state machine and token registry.
* ``api`` – FastAPI application exposing the HTTP and WebSocket endpoints.
"""
