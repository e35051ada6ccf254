#!/usr/bin/env python3
"""
Simple script to run the FastAPI development server.
Usage: python run.py
"""
import uvicorn
from hypemarket.config import settings

if __name__ == "__main__":
    uvicorn.run(
        "hypemarket.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.APP_DEBUG,
    )
