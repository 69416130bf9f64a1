"""Router service entry point: `uvicorn main:app`."""
from fleet.api import create_app

app = create_app()
