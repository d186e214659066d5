# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
import uvicorn

from async_mail_transfer.config_loader import load_settings
from async_mail_transfer.logger import configure_logging
from async_mail_transfer.server import create_server_app


if __name__ == "__main__":
    settings = load_settings()
    configure_logging(settings.get("log_level"))
    app = create_server_app(settings)
    uvicorn.run(app, host=str(settings["http_host"]), port=int(settings["http_port"]))
