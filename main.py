"""ASGI entrypoint: `uvicorn main:app`.

Workloads can be pre-registered from DSC_WORKLOADS_FILE (JSON, see
dsc.api_models.ControllerConfig); more can be added through the API or cli.py.
"""
from dsc.api import create_app

app = create_app()
