import json
import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request, Response, WebSocket, WebSocketDisconnect, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from pymongo.database import Database
from starlette.exceptions import HTTPException as StarletteHTTPException

import config
from database import ensure_indexes, get_database
from errors import AppError, AuthenticationError, PermissionDeniedError, UnexpectedError, describe_validation_errors
from realtime import ConnectionManager, Notifier, event
from schemas import CreateChatRequest, LoginRequest, MarkReadRequest, ProfileUpdate, RegisterRequest, SendMessageRequest
from seed import seed_test_users
from services import AuthService, ChatRegistry, MessageStore, ProfileService, ensure_participant, load_chat

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)


# ------------ Dependencies ------------

def get_auth(request: Request) -> AuthService:
    return request.app.state.auth


def get_profiles(request: Request) -> ProfileService:
    return request.app.state.profiles


def get_chats(request: Request) -> ChatRegistry:
    return request.app.state.chats


def get_messages(request: Request) -> MessageStore:
    return request.app.state.messages


def get_current_user(token: Optional[str] = Depends(oauth2_scheme), auth: AuthService = Depends(get_auth)) -> dict:
    return auth.resolve_current_user(token)


def current_user_id(current: dict = Depends(get_current_user)) -> str:
    return str(current["_id"])


def require_self(claimed_id: str, current_id: str, message: str):
    if claimed_id != current_id:
        raise PermissionDeniedError(message)


# ------------ App ------------

def create_app(db: Optional[Database] = None, notifier: Optional[Notifier] = None) -> FastAPI:
    if db is None:
        db = get_database()
    manager = ConnectionManager()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ensure_indexes(db)
        if config.SEED_TEST_USERS:
            seed_test_users(app.state.auth, app.state.profiles)
        yield

    app = FastAPI(title="Dating Chat API", lifespan=lifespan)
    app.state.db = db
    app.state.manager = manager
    app.state.auth = AuthService(db)
    app.state.profiles = ProfileService(db)
    app.state.chats = ChatRegistry(db)
    app.state.messages = MessageStore(db, notifier if notifier is not None else manager)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        client = request.client.host if request.client else "-"
        logger.info(
            "%s %s -> %d (%.1f ms) ip=%s ua=%s",
            request.method,
            request.url.path,
            response.status_code,
            (time.perf_counter() - started) * 1000,
            client,
            request.headers.get("user-agent", "Unknown"),
        )
        return response

    register_error_handlers(app)
    register_routes(app)
    register_websocket(app, manager)
    return app


def register_error_handlers(app: FastAPI):
    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.error("%s %s failed [%s]: %s", request.method, request.url.path, exc.error_code, exc.message)
        else:
            logger.info("%s %s rejected [%s]: %s", request.method, request.url.path, exc.error_code, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "error": describe_validation_errors(exc.errors())},
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        detail = exc.detail
        if exc.status_code == status.HTTP_404_NOT_FOUND and detail == "Not Found":
            detail = "Route not found"
        return JSONResponse(status_code=exc.status_code, content={"success": False, "error": detail})

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        error = UnexpectedError("Internal Server Error")
        logger.exception("Unhandled error on %s %s [%s]", request.method, request.url.path, error.error_code)
        return JSONResponse(status_code=error.status_code, content=error.to_dict())


def register_routes(app: FastAPI):
    # ------------ Auth ------------

    @app.post("/api/auth/register", status_code=status.HTTP_201_CREATED)
    def register(data: RegisterRequest, auth: AuthService = Depends(get_auth)):
        user = auth.register(data.name, data.email, data.password, data.age, data.photos)
        return {"success": True, "data": user}

    @app.post("/api/auth/login")
    def login(data: LoginRequest, auth: AuthService = Depends(get_auth)):
        user, token = auth.login(data.email, data.password)
        return {"success": True, "data": user, "token": token}

    @app.get("/api/auth/me")
    def me(uid: str = Depends(current_user_id), profiles: ProfileService = Depends(get_profiles)):
        return {"success": True, "data": profiles.get_profile(uid)}

    @app.post("/api/auth/logout")
    def logout(uid: str = Depends(current_user_id), auth: AuthService = Depends(get_auth)):
        return {"success": True, **auth.logout()}

    # ------------ Users ------------

    @app.get("/api/users")
    def list_users(uid: str = Depends(current_user_id), profiles: ProfileService = Depends(get_profiles)):
        return {"success": True, "data": profiles.list_users()}

    @app.patch("/api/users/{user_id}")
    def update_user(
        user_id: str,
        update: ProfileUpdate,
        uid: str = Depends(current_user_id),
        profiles: ProfileService = Depends(get_profiles),
    ):
        return {"success": True, "data": profiles.update_profile(uid, user_id, update)}

    # ------------ Chats & Messages ------------

    @app.get("/api/chats")
    def my_chats(
        user_id: Optional[str] = Query(None, alias="userId"),
        uid: str = Depends(current_user_id),
        chats: ChatRegistry = Depends(get_chats),
    ):
        return {"success": True, "data": chats.list_chats_for_user(user_id or "", requester_id=uid)}

    @app.get("/api/chats/{chat_id}")
    def get_chat(chat_id: str, uid: str = Depends(current_user_id), chats: ChatRegistry = Depends(get_chats)):
        return {"success": True, "data": chats.get_chat(chat_id, uid)}

    @app.post("/api/chats")
    def start_chat(
        data: CreateChatRequest,
        response: Response,
        uid: str = Depends(current_user_id),
        chats: ChatRegistry = Depends(get_chats),
    ):
        chat, created = chats.create_or_get_chat(data.user_id, data.other_user_id, requester_id=uid)
        response.status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
        return {"success": True, "data": chat}

    @app.post("/api/chats/{chat_id}/messages", status_code=status.HTTP_201_CREATED)
    def send_message(
        chat_id: str,
        msg: SendMessageRequest,
        uid: str = Depends(current_user_id),
        messages: MessageStore = Depends(get_messages),
    ):
        require_self(msg.sender_id, uid, "Not authorized to send message as this user")
        message = messages.send_message(chat_id, msg.sender_id, msg.text, msg.type, msg.image_url)
        return {"success": True, "data": message}

    @app.post("/api/chats/{chat_id}/read")
    def mark_read(
        chat_id: str,
        data: MarkReadRequest,
        uid: str = Depends(current_user_id),
        messages: MessageStore = Depends(get_messages),
    ):
        require_self(data.user_id, uid, "Not authorized to mark messages as read for this user")
        count = messages.mark_read(chat_id, data.user_id)
        return {"success": True, "message": "Messages marked as read", "data": {"markedCount": count}}

    # --------- Health ---------

    @app.get("/api/health")
    def health():
        return {"success": True, "message": "Server is running"}


# ------------ WebSockets ------------

def register_websocket(app: FastAPI, manager: ConnectionManager):
    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket, token: Optional[str] = None):
        try:
            user = app.state.auth.resolve_current_user(token)
        except AuthenticationError as exc:
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=exc.message)
            return

        user_id = str(user["_id"])
        await manager.connect(user_id, websocket)
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    data = json.loads(raw)
                except ValueError:
                    data = None
                if not isinstance(data, dict):
                    await websocket.send_json(event("error", {"message": "Malformed event"}))
                    continue

                event_type = data.get("type")
                chat_id = data.get("chatId")
                if chat_id is not None:
                    chat_id = str(chat_id)
                if event_type == "join-chat":
                    try:
                        chat = load_chat(app.state.db, chat_id)
                        ensure_participant(chat, user_id)
                    except AppError as exc:
                        await websocket.send_json(event("error", {"chatId": chat_id, "message": exc.message}))
                        continue
                    chat_id = str(chat["_id"])
                    manager.register_chat(chat_id, websocket)
                    await websocket.send_json(event("joined-chat", {"chatId": chat_id}))
                elif event_type == "leave-chat":
                    manager.unregister_chat(chat_id, websocket)
                    await websocket.send_json(event("left-chat", {"chatId": chat_id}))
                elif event_type == "typing":
                    if websocket in manager.chat_rooms.get(chat_id, ()):
                        payload = {"chatId": chat_id, "userId": user_id, "isTyping": bool(data.get("isTyping", True))}
                        await manager.notify_chat(chat_id, event("user-typing", payload), exclude=websocket)
                else:
                    await websocket.send_json(event("error", {"message": "Unknown event"}))
        except WebSocketDisconnect:
            logger.debug("Socket closed for user %s", user_id)
        finally:
            manager.disconnect(user_id, websocket)


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=config.HOST, port=config.PORT)
