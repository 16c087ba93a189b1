"""Application entry point for the dog walking JSON API."""

from dogwalking.webapp import create_app

app = create_app()


if __name__ == "__main__":
    app.run(debug=True, port=4001)
