# backend/wsgi.py
from cuehall import create_app
from cuehall.services.scheduler import start_background_jobs

app = create_app()

if app.config["BACKGROUND_JOBS_ENABLED"]:
    start_background_jobs(app)


if __name__ == "__main__":
    app.run()
