"""Development server for the booking API.

Production deployments serve ``run:app`` from a WSGI server instead.
"""
from __future__ import annotations

import os

from sqlalchemy.engine import make_url

from beautonomi import create_app

app = create_app()


def main() -> None:
    debug_enabled = os.environ.get("FLASK_DEBUG", "0") in {"1", "true", "True"}
    database = make_url(app.config["SQLALCHEMY_DATABASE_URI"]).render_as_string(hide_password=True)
    print(
        f"Booking API on {database} "
        f"(lock timeout {app.config['BOOKING_LOCK_TIMEOUT_SECONDS']}s, "
        f"buffer {app.config['BOOKING_BUFFER_MINUTES']} min)"
    )
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", 5000)), debug=debug_enabled)


if __name__ == "__main__":
    main()
