#!/usr/bin/env python3
"""TeamBoard WSGI entry point.

    gunicorn wsgi:application
    waitress-serve --port=8080 wsgi:application
"""

from app.flask_app import flask_app

application = flask_app

if __name__ == "__main__":
    application.run(debug=False)
