from fastapi import FastAPI

from app.routes import api
from app.routes import config as config_api

app = FastAPI(title="Quarry Scraper Runner")
app.include_router(api.router)
app.include_router(config_api.router)


@app.get("/")
async def root() -> dict:
    """Report that the service is up."""
    return {"status": "ok"}
