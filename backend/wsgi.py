# Overview: WSGI entry point for Flask CLI and production servers.

from settlement import create_app

app = create_app()
