#!/usr/bin/env python3
"""TeamBoard - Flask Application

Runs the TeamBoard WSGI application under Flask so deployments get Flask's
server, CLI and test client while the route logic stays in `app.server`.
"""

from __future__ import annotations

import os

import click
from flask import Flask, request

from app.server import (
    COOKIE_SECURE,
    HOST,
    PORT,
    SECRET_KEY,
    app as wsgi_app,
    create_user,
    db_connect,
    ensure_bootstrap,
)

flask_app = Flask(__name__, static_folder=None, template_folder=None)

flask_app.config['SECRET_KEY'] = SECRET_KEY
flask_app.config['SESSION_COOKIE_SECURE'] = COOKIE_SECURE
flask_app.config['SESSION_COOKIE_HTTPONLY'] = True
flask_app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'


@flask_app.before_request
def setup_request():
    """Initialize request context."""
    # Health probes stay lightweight and never wait on database bootstrap.
    if request.path in {"/healthz"}:
        return None
    ensure_bootstrap()


@flask_app.route('/', defaults={'path': ''}, methods=['GET', 'POST', 'PUT', 'DELETE', 'PATCH'])
@flask_app.route('/<path:path>', methods=['GET', 'POST', 'PUT', 'DELETE', 'PATCH'])
def catch_all(path):
    """Delegate every route to the TeamBoard WSGI application."""
    response_data = {}

    def start_response(status, headers, exc_info=None):
        response_data['status'] = status
        response_data['headers'] = headers
        return lambda s: None

    response_body = wsgi_app(request.environ, start_response)
    body = b''.join(response_body)
    status_code = int(response_data.get('status', '200 OK').split()[0])

    response = flask_app.make_response((body, status_code))
    for header_name, header_value in response_data.get('headers', []):
        if header_name.lower() == 'set-cookie':
            response.headers.add(header_name, header_value)
        else:
            response.headers[header_name] = header_value
    return response


@flask_app.cli.command("init-db")
def init_db():
    """Initialize the database (Flask CLI command)."""
    ensure_bootstrap()
    print("Database initialized successfully!")


@flask_app.cli.command("create-user")
@click.option("--email", required=True, help="Login email for the new user.")
@click.option("--name", required=True, help="Display name.")
def create_user_command(email, name):
    """Create a board user (Flask CLI command)."""
    ensure_bootstrap()
    conn = db_connect()
    try:
        user_id, error = create_user(conn, email, name)
        if error:
            raise click.ClickException(f"Could not create user: {error}")
        conn.commit()
    finally:
        conn.close()
    print(f"Created user #{user_id} <{email.strip().lower()}>")


if __name__ == '__main__':
    # In production, use: gunicorn wsgi:application
    flask_app.run(
        host=HOST,
        port=PORT,
        debug=os.environ.get('FLASK_DEBUG', '0') == '1',
        threaded=True
    )
