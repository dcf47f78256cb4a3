"""Run the API with uvicorn: python -m abtesting"""
import uvicorn

from abtesting.config import settings

if __name__ == "__main__":
    uvicorn.run("abtesting.main:app", host=settings.host, port=settings.port)
