from mangum import Mangum
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from loyalty.api import create_app
from loyalty.config import Settings
from loyalty.logging_config import setup_logging

settings = Settings.from_env()
setup_logging(settings.log_level)

app = create_app(settings=settings)
app.root_path = "/api"

handler = Mangum(app, lifespan="off")
