import logging
from typing import Optional
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from .routers import health, listings, admin, chats, users
from .backend import Backend, select_backend
from .config import dev_mode, get_list_setting, get_setting
from .errors import MarketplaceError, from_pydantic
from .identity import IdentityResolver
from .mongo import close_mongo
from .realtime import RealtimeHub

logger = logging.getLogger("uvicorn.error")


def create_app(backend: Optional[Backend] = None) -> FastAPI:
	"""Build the API. Pass `backend` to skip storage selection (tests, scripts)."""
	app = FastAPI(title="CampusMarket API")
	app.state.backend = backend
	app.state.hub = None
	app.state.resolver = None

	# Dev CORS (set CORS_ORIGINS for production)
	app.add_middleware(
		CORSMiddleware,
		allow_origins=get_list_setting("CORS_ORIGINS") or ["*"],
		allow_credentials=True,
		allow_methods=["*"],
		allow_headers=["*"],
	)

	app.include_router(health.router, prefix="/health", tags=["health"])
	app.include_router(listings.router, prefix="/listings", tags=["listings"])
	app.include_router(admin.router, prefix="/admin", tags=["admin"])
	app.include_router(chats.router, prefix="/chats", tags=["chats"])
	app.include_router(users.router, prefix="/users", tags=["users"])

	@app.exception_handler(MarketplaceError)
	async def marketplace_error(request: Request, exc: MarketplaceError):
		return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_detail()})

	@app.exception_handler(RequestValidationError)
	async def request_validation_error(request: Request, exc: RequestValidationError):
		err = from_pydantic(exc)
		return JSONResponse(status_code=err.status_code, content={"detail": err.to_detail()})

	@app.exception_handler(Exception)
	async def unexpected_error(request: Request, exc: Exception):
		logger.exception("Unhandled error on %s %s", request.method, request.url.path)
		return JSONResponse(status_code=500, content={"detail": {"code": "INTERNAL_ERROR", "message": "internal error"}})

	@app.on_event("startup")
	async def on_startup():
		if app.state.backend is None:
			app.state.backend = await select_backend()
		app.state.resolver = IdentityResolver(
			app.state.backend.users,
			jwks_url=get_setting("AUTH_JWKS_URL"),
			issuer=get_setting("AUTH_ISSUER"),
			audience=get_setting("AUTH_AUDIENCE"),
			dev=dev_mode(),
		)
		app.state.hub = RealtimeHub()
		logger.info("Realtime hub started (storage: %s)", app.state.backend.kind)

	@app.on_event("shutdown")
	async def on_shutdown():
		if app.state.hub is not None:
			app.state.hub.close()
			app.state.hub = None
		if app.state.backend is not None and app.state.backend.kind == "mongo":
			close_mongo()

	@app.get("/")
	def read_root():
		return {"message": "CampusMarket API is running"}

	return app


app = create_app()


if __name__ == "__main__":
	import uvicorn
	uvicorn.run(app, host="0.0.0.0", port=8000)
