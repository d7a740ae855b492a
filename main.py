import uvicorn

from pmta_import.config_loader import load_settings
from pmta_import.logger import configure_logging
from pmta_import.server import build_app, build_service

# Configure logging level from environment
configure_logging()


if __name__ == "__main__":
    settings = load_settings()
    # The service starts inside the app lifespan so uvicorn owns the event loop
    service = build_service(settings)
    app = build_app(settings, service=service)

    uvicorn.run(app, host=str(settings["http_host"]), port=int(settings["http_port"]))
