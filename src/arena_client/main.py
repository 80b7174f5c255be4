import uvicorn

from . import config as config_module
from .config import get_config
from .mock_server import MockBackend, create_app


def main() -> None:
    config = get_config()
    config_module.DEBUG = bool(config.get("debug", True))
    port = config["mock_server_port"]

    backend = MockBackend()
    access, refresh = backend.issue_tokens()

    print("=" * 60)
    print("🚀 Arena development backend starting...")
    print("=" * 60)
    print(f"📚 API Base URL: http://localhost:{port}/api")
    print(f"🔑 Access token:  {access}")
    print(f"🔄 Refresh token: {refresh}")
    print("=" * 60)
    uvicorn.run(create_app(backend), host="127.0.0.1", port=port)


if __name__ == "__main__":
    main()
