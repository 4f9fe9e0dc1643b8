# server/main.py
import argparse
import logging
import os

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from valentine_duel.server.socket_main import RendezvousRegistry, router


def create_app() -> FastAPI:
    app = FastAPI(title="Valentine Duel Rendezvous")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.registry = RendezvousRegistry()
    app.include_router(router)

    @app.get("/health")
    async def health():
        return {"status": "ok", "endpoints": len(app.state.registry.endpoints)}

    return app


app = create_app()


def run():
    parser = argparse.ArgumentParser(description="Rendezvous service for Valentine Duel peers")
    parser.add_argument("--host", default=os.getenv("RENDEZVOUS_HOST", "0.0.0.0"))
    parser.add_argument("--port", type=int, default=int(os.getenv("RENDEZVOUS_PORT", "9000")))
    args = parser.parse_args()

    logging.basicConfig(level=os.getenv("LOGLEVEL", "INFO"), format="%(asctime)s %(levelname)s %(message)s")
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    run()
