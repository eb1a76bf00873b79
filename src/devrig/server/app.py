"""FastAPI application factory for the dev server front door."""

from fastapi import FastAPI, Request
from fastapi.responses import FileResponse, PlainTextResponse, Response

from devrig.server import hmr_routes
from devrig.server.front_door import DevFrontDoor
from devrig.utils.diagnostics import ServiceUnavailable

FORWARDED_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
RELEASE_CACHE_CONTROL = "public, max-age=31536000, immutable"


def create_front_door_app(front_door: DevFrontDoor) -> FastAPI:
    """Create the application that serves assets and forwards everything else."""
    app = FastAPI(
        title="devrig dev server",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.front_door = front_door

    app.include_router(hmr_routes.router)

    public_path = front_door.state.client_target.output.public_path

    @app.api_route(public_path + "{asset_path:path}", methods=["GET", "HEAD"])
    async def serve_asset(asset_path: str, request: Request):
        try:
            await front_door.wait_for_assets()
        except ServiceUnavailable as exc:
            return PlainTextResponse(str(exc), status_code=503)

        asset = front_door.state.assets.get(asset_path)
        if asset is None:
            return await front_door.dispatch(request)

        if front_door.state.release:
            headers = {"Cache-Control": RELEASE_CACHE_CONTROL}
        else:
            headers = {"Cache-Control": "no-cache", "ETag": asset.etag}
            if request.headers.get("if-none-match") == asset.etag:
                return Response(status_code=304, headers=headers)

        body = b"" if request.method == "HEAD" else asset.data
        headers["Content-Length"] = str(len(asset.data))
        return Response(body, media_type=asset.media_type, headers=headers)

    @app.api_route("/{path:path}", methods=FORWARDED_METHODS)
    async def forward(path: str, request: Request):
        if request.method in ("GET", "HEAD"):
            static_file = front_door.public_file(path)
            if static_file is not None:
                return FileResponse(static_file)
        return await front_door.dispatch(request)

    return app
