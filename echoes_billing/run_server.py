# this file is a wrapper to run the billing server with uvicorn
import uvicorn

from echoes_billing.core.config.general_config import settings
from echoes_billing.main import app as fastapi_app


def main():
    uvicorn.run(fastapi_app, host=settings.HOST, port=settings.PORT)


if __name__ == "__main__":
    main()
