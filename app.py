#!/usr/bin/env python3
import logging
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from config import (ALLOWED_HOSTS, ALLOWED_ORIGINS, DB_PATH, DEFAULT_PAGE_SIZE, GZIP_MIN_SIZE,
                    HTTP_INTERNAL_SERVER_ERROR, HTTP_NOT_FOUND, HTTP_REQUEST_ENTITY_TOO_LARGE,
                    LOG_LEVEL, MAX_REQUEST_SIZE_MB, SECONDS_PER_DAY, SECRET_KEY,
                    SEARCH_SUGGESTION_LIMIT)
from database import DatabaseManager
from exceptions import ErrorCode, ForumError, Unauthorized, ValidationFailed
from forum import Forum, ListFilters
from models import (AccountDelete, CategoryCreate, CategoryResponse, ErrorResponse, ModerationLogEntry,
                    PageResponse, PostCreate, PostEdit, PostResponse, PostSearchHit, ProfileResponse,
                    PublicUserResponse, RevisionResponse, RoleUpdate, SearchResponse, StatsResponse,
                    SuggestionsResponse, ThreadCreate, ThreadEdit, ThreadLockUpdate, ThreadResponse,
                    ThreadSearchHit, TokenResponse, UserActivityResponse, UserBan, UserLogin, UserRegister,
                    UserResponse)
from pagination import PageRequest
from search import SearchFilters
from security import SecurityManager
from users import Actor, Role, UserStatus
from utils import parse_id_list, timestamp

logger = logging.getLogger(__name__)

bearer = HTTPBearer(auto_error=False)
security_manager = SecurityManager(secret_key=SECRET_KEY)
router = APIRouter()

SEARCH_TYPES = ("all", "threads", "posts", "users")


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        # Request size limit (1MB for API requests)
        content_length = request.headers.get("content-length")
        if content_length and content_length.isdigit() and int(content_length) > MAX_REQUEST_SIZE_MB * 1024 * 1024:
            return JSONResponse(
                status_code=HTTP_REQUEST_ENTITY_TOO_LARGE,
                content=ErrorResponse(error="RequestTooLarge", message="Request entity too large").model_dump()
            )

        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none';"
        return response


# -- dependencies ----------------------------------------------------------------

def get_forum(request: Request) -> Forum:
    return request.app.state.forum


async def get_optional_actor(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
                             forum: Forum = Depends(get_forum)) -> Optional[Actor]:
    if credentials is None:
        return None
    user_id = security_manager.user_id_from_token(credentials.credentials)
    actor = await forum.users.get_actor(user_id)
    if actor is None:
        raise Unauthorized("Account no longer exists")
    return actor


async def get_current_actor(actor: Optional[Actor] = Depends(get_optional_actor)) -> Actor:
    if actor is None:
        raise Unauthorized("Not authenticated")
    return actor


def page_request(page: int = 1, per_page: int = DEFAULT_PAGE_SIZE) -> PageRequest:
    return PageRequest(page=page, page_size=per_page)


def _id_list(raw: Optional[str]) -> tuple[int, ...]:
    try:
        return parse_id_list(raw)
    except ValueError as exc:
        raise ValidationFailed("category_ids must be a comma separated list of ids") from exc


def _token_response(user) -> TokenResponse:
    return TokenResponse(
        access_token=security_manager.create_access_token({"sub": str(user.user_id)}),
        expires_in=security_manager.access_token_expire_minutes * 60,
        user=UserResponse.model_validate(user),
    )


# -- auth ------------------------------------------------------------------------

@router.post("/api/auth/register", response_model=TokenResponse)
async def register(user_data: UserRegister, forum: Forum = Depends(get_forum)):
    password_hash, _ = security_manager.hash_password(user_data.password)
    user = await forum.users.create_user(user_data.username, user_data.email, password_hash)
    return _token_response(user)


@router.post("/api/auth/login", response_model=TokenResponse)
async def login(login_data: UserLogin, forum: Forum = Depends(get_forum)):
    user = await forum.users.get_user_by_username(login_data.username)
    if not user or not security_manager.verify_password(login_data.password, user.password_hash):
        logger.warning("failed login for %s", login_data.username)
        raise Unauthorized()
    await forum.users.record_login(user)
    return _token_response(user)


@router.post("/api/auth/delete-account")
async def delete_account(delete_data: AccountDelete, actor: Actor = Depends(get_current_actor),
                         forum: Forum = Depends(get_forum)):
    user = await forum.users.get_user(actor.id)
    if not user or not security_manager.verify_password(delete_data.password, user.password_hash):
        raise Unauthorized("Invalid password")
    await forum.delete_own_account(actor)
    return {"message": "Account deleted successfully"}


# -- profiles --------------------------------------------------------------------

@router.get("/api/users/{username}", response_model=ProfileResponse)
async def get_user_profile(username: str, forum: Forum = Depends(get_forum)):
    profile = await forum.get_profile(username)
    return ProfileResponse(
        user=PublicUserResponse.model_validate(profile.user),
        recent_threads=[ThreadResponse.model_validate(thread) for thread in profile.threads],
        recent_posts=[PostResponse.model_validate(post) for post in profile.posts],
    )


# -- threads ---------------------------------------------------------------------

@router.get("/api/threads", response_model=PageResponse[ThreadResponse])
async def list_threads(category_id: Optional[int] = None, paging: PageRequest = Depends(page_request),
                       forum: Forum = Depends(get_forum)):
    if category_id is None:
        result = await forum.list_page("threads", paging)
    else:
        result = await forum.list_page("category_threads", paging, ListFilters(category_id=category_id))
    return PageResponse[ThreadResponse].from_result(result, ThreadResponse)


@router.post("/api/threads", response_model=ThreadResponse, status_code=status.HTTP_201_CREATED)
async def create_thread(thread_data: ThreadCreate, actor: Actor = Depends(get_current_actor),
                        forum: Forum = Depends(get_forum)):
    thread = await forum.create_thread(actor, thread_data.title, thread_data.content, thread_data.category_ids)
    return ThreadResponse.model_validate(thread)


@router.get("/api/threads/{thread_id}", response_model=ThreadResponse)
async def get_thread(thread_id: int, forum: Forum = Depends(get_forum)):
    return ThreadResponse.model_validate(await forum.get_thread(thread_id))


@router.patch("/api/threads/{thread_id}", response_model=ThreadResponse)
async def edit_thread(thread_id: int, thread_data: ThreadEdit, actor: Actor = Depends(get_current_actor),
                      forum: Forum = Depends(get_forum)):
    changes = thread_data.model_dump(exclude={"expected_version"}, exclude_none=True)
    thread = await forum.edit_thread(thread_id, actor, changes, thread_data.expected_version)
    return ThreadResponse.model_validate(thread)


@router.delete("/api/threads/{thread_id}")
async def delete_thread(thread_id: int, actor: Actor = Depends(get_current_actor),
                        forum: Forum = Depends(get_forum)):
    await forum.delete_thread(thread_id, actor)
    return {"message": "Thread deleted successfully"}


@router.get("/api/threads/{thread_id}/history", response_model=list[RevisionResponse])
async def get_thread_history(thread_id: int, forum: Forum = Depends(get_forum)):
    return [RevisionResponse.model_validate(record) for record in await forum.list_thread_history(thread_id)]


@router.get("/api/threads/{thread_id}/history/{version}", response_model=RevisionResponse)
async def get_thread_version(thread_id: int, version: int, forum: Forum = Depends(get_forum)):
    return RevisionResponse.model_validate(await forum.get_thread_version(thread_id, version))


@router.patch("/api/threads/{thread_id}/lock", response_model=ThreadResponse)
async def toggle_thread_lock(thread_id: int, lock_data: ThreadLockUpdate, actor: Actor = Depends(get_current_actor),
                             forum: Forum = Depends(get_forum)):
    thread = await forum.set_thread_lock(thread_id, actor, lock_data.locked)
    return ThreadResponse.model_validate(thread)


@router.get("/api/threads/{thread_id}/posts", response_model=PageResponse[PostResponse])
async def get_posts(thread_id: int, paging: PageRequest = Depends(page_request), forum: Forum = Depends(get_forum)):
    result = await forum.list_page("thread_posts", paging, ListFilters(thread_id=thread_id))
    return PageResponse[PostResponse].from_result(result, PostResponse)


@router.post("/api/threads/{thread_id}/posts", response_model=PostResponse, status_code=status.HTTP_201_CREATED)
async def create_post(thread_id: int, post_data: PostCreate, actor: Actor = Depends(get_current_actor),
                      forum: Forum = Depends(get_forum)):
    return PostResponse.model_validate(await forum.create_post(thread_id, actor, post_data.content))


# -- posts -----------------------------------------------------------------------

@router.get("/api/posts/{post_id}", response_model=PostResponse)
async def get_post(post_id: int, forum: Forum = Depends(get_forum)):
    return PostResponse.model_validate(await forum.get_post(post_id))


@router.patch("/api/posts/{post_id}", response_model=PostResponse)
async def edit_post(post_id: int, post_data: PostEdit, actor: Actor = Depends(get_current_actor),
                    forum: Forum = Depends(get_forum)):
    post = await forum.edit_post(post_id, actor, {"content": post_data.content}, post_data.expected_version)
    return PostResponse.model_validate(post)


@router.delete("/api/posts/{post_id}")
async def delete_post(post_id: int, actor: Actor = Depends(get_current_actor), forum: Forum = Depends(get_forum)):
    await forum.delete_post(post_id, actor)
    return {"message": "Post deleted successfully"}


@router.get("/api/posts/{post_id}/history", response_model=list[RevisionResponse])
async def get_post_edit_history(post_id: int, forum: Forum = Depends(get_forum)):
    return [RevisionResponse.model_validate(record) for record in await forum.list_post_history(post_id)]


@router.get("/api/posts/{post_id}/history/{version}", response_model=RevisionResponse)
async def get_post_version(post_id: int, version: int, forum: Forum = Depends(get_forum)):
    return RevisionResponse.model_validate(await forum.get_post_version(post_id, version))


# -- search ----------------------------------------------------------------------

@router.get("/api/search")
async def search_forum(q: str = "", type: str = "all", date_range: str = "all",
                       category_ids: Optional[str] = None, author: Optional[str] = None,
                       author_id: Optional[int] = None, paging: PageRequest = Depends(page_request),
                       forum: Forum = Depends(get_forum)):
    if type not in SEARCH_TYPES:
        raise ValidationFailed(f"type must be one of {', '.join(SEARCH_TYPES)}")
    filters = SearchFilters(date_range=date_range, category_ids=_id_list(category_ids),
                            author_id=author_id, author=author)

    if type == "all":
        result = await forum.search_all(q, paging, filters)
        return SearchResponse(
            query=result.query,
            threads=PageResponse[ThreadSearchHit].from_result(
                result.threads, ThreadSearchHit, lambda thread: ThreadSearchHit.from_thread(thread, result.query)),
            posts=PageResponse[PostSearchHit].from_result(
                result.posts, PostSearchHit, lambda post: PostSearchHit.from_post(post, result.query)),
            users=PageResponse[PublicUserResponse].from_result(result.users, PublicUserResponse),
            page=result.page,
            page_size=result.page_size,
            total_pages=result.total_pages,
            total_count=result.total_count,
        )

    page = await forum.list_page(f"search_{type}", paging, ListFilters(query=q, search=filters))
    if type == "threads":
        return PageResponse[ThreadSearchHit].from_result(
            page, ThreadSearchHit, lambda thread: ThreadSearchHit.from_thread(thread, q))
    if type == "posts":
        return PageResponse[PostSearchHit].from_result(page, PostSearchHit, lambda post: PostSearchHit.from_post(post, q))
    return PageResponse[PublicUserResponse].from_result(page, PublicUserResponse)


@router.get("/api/search/suggestions", response_model=SuggestionsResponse)
async def search_suggestions(q: str = "", limit: int = Query(SEARCH_SUGGESTION_LIMIT, ge=1, le=10),
                             forum: Forum = Depends(get_forum)):
    suggestions = await forum.search_suggestions(q, limit)
    return SuggestionsResponse(
        threads=[ThreadResponse.model_validate(thread) for thread in suggestions.threads],
        posts=[PostResponse.model_validate(post) for post in suggestions.posts],
        users=[PublicUserResponse.model_validate(user) for user in suggestions.users],
    )


# -- categories ------------------------------------------------------------------

@router.get("/api/categories", response_model=list[CategoryResponse])
async def get_categories(forum: Forum = Depends(get_forum)):
    return [CategoryResponse.model_validate(category) for category in await forum.get_categories()]


@router.post("/api/categories", response_model=CategoryResponse, status_code=status.HTTP_201_CREATED)
async def create_category(category_data: CategoryCreate, actor: Actor = Depends(get_current_actor),
                          forum: Forum = Depends(get_forum)):
    category = await forum.create_category(actor, category_data.name, category_data.description,
                                           category_data.color)
    return CategoryResponse.model_validate(category)


# -- admin -----------------------------------------------------------------------

@router.get("/api/admin/users", response_model=PageResponse[UserResponse])
async def get_all_users(search: Optional[str] = None, user_status: Optional[UserStatus] = Query(None, alias="status"),
                        role: Optional[Role] = None, paging: PageRequest = Depends(page_request),
                        actor: Actor = Depends(get_current_actor), forum: Forum = Depends(get_forum)):
    filters = ListFilters(user_search=search, status=user_status, role=role)
    result = await forum.list_page("users", paging, filters, actor=actor)
    return PageResponse[UserResponse].from_result(result, UserResponse)


@router.get("/api/admin/users/{user_id}/activity", response_model=UserActivityResponse)
async def get_user_activity(user_id: int, actor: Actor = Depends(get_current_actor),
                            forum: Forum = Depends(get_forum)):
    activity = await forum.get_user_activity(actor, user_id)
    return UserActivityResponse(
        user=UserResponse.model_validate(activity.user),
        threads=[ThreadResponse.model_validate(thread) for thread in activity.threads],
        posts=[PostResponse.model_validate(post) for post in activity.posts],
    )


@router.get("/api/admin/locked-threads", response_model=PageResponse[ThreadResponse])
async def get_locked_threads(paging: PageRequest = Depends(page_request), actor: Actor = Depends(get_current_actor),
                             forum: Forum = Depends(get_forum)):
    result = await forum.list_page("locked_threads", paging, actor=actor)
    return PageResponse[ThreadResponse].from_result(result, ThreadResponse)


@router.patch("/api/admin/users/{user_id}/role", response_model=UserResponse)
async def change_user_role(user_id: int, role_data: RoleUpdate, actor: Actor = Depends(get_current_actor),
                           forum: Forum = Depends(get_forum)):
    return UserResponse.model_validate(await forum.set_role(actor, user_id, role_data.role))


@router.post("/api/admin/users/{user_id}/ban", response_model=UserResponse)
async def ban_user(user_id: int, ban_data: UserBan, actor: Actor = Depends(get_current_actor),
                   forum: Forum = Depends(get_forum)):
    until = ban_data.until
    if until is None and ban_data.duration is not None:
        until = timestamp() + ban_data.duration * SECONDS_PER_DAY
    return UserResponse.model_validate(await forum.ban(actor, user_id, ban_data.reason, until))


@router.post("/api/admin/users/{user_id}/unban", response_model=UserResponse)
async def unban_user(user_id: int, actor: Actor = Depends(get_current_actor), forum: Forum = Depends(get_forum)):
    return UserResponse.model_validate(await forum.unban(actor, user_id))


@router.delete("/api/admin/users/{user_id}")
async def delete_user(user_id: int, actor: Actor = Depends(get_current_actor), forum: Forum = Depends(get_forum)):
    await forum.delete_user(actor, user_id)
    return {"message": "User deleted successfully"}


@router.get("/api/admin/moderation-log", response_model=PageResponse[ModerationLogEntry])
async def get_moderation_log(paging: PageRequest = Depends(page_request), actor: Actor = Depends(get_current_actor),
                             forum: Forum = Depends(get_forum)):
    result = await forum.list_page("moderation_log", paging, actor=actor)
    return PageResponse[ModerationLogEntry].from_result(result, ModerationLogEntry)


@router.get("/api/admin/stats", response_model=StatsResponse)
async def get_forum_statistics(actor: Actor = Depends(get_current_actor), forum: Forum = Depends(get_forum)):
    return StatsResponse(**await forum.admin_stats(actor))


@router.get("/health")
async def health_check(forum: Forum = Depends(get_forum)):
    database_ok = await forum.db.ping()
    return {
        "status": "healthy" if database_ok else "degraded",
        "timestamp": timestamp(),
        "database": database_ok,
    }


# -- exception handlers ----------------------------------------------------------

async def forum_error_handler(request: Request, exc: ForumError):
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=exc.code.value, message=exc.message).model_dump()
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    error = ErrorCode.NOT_FOUND.value if exc.status_code == HTTP_NOT_FOUND else exc.__class__.__name__
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=error, message=str(exc.detail)).model_dump(),
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = [{"loc": [str(part) for part in error["loc"]], "msg": error["msg"]} for error in exc.errors()]
    message = errors[0]["msg"] if errors else ValidationFailed.default_message
    return JSONResponse(
        status_code=ValidationFailed.status_code,
        content=ErrorResponse(error=ErrorCode.VALIDATION_FAILED.value, message=message,
                              details={"errors": errors}).model_dump()
    )


async def general_exception_handler(request: Request, exc: Exception):
    logger.error("unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=HTTP_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(error="InternalServerError", message="An unexpected error occurred").model_dump()
    )


def create_app(db_path: str = DB_PATH, bootstrap_admin: bool = True) -> FastAPI:
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    app = FastAPI(title="Forum API", description="Forum with revisioned content and moderation",
                  version="1.0.0")
    app.state.forum = Forum(DatabaseManager(db_path))

    app.add_middleware(GZipMiddleware, minimum_size=GZIP_MIN_SIZE)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"]
    )
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=ALLOWED_HOSTS)

    app.add_exception_handler(ForumError, forum_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    app.include_router(router)

    @app.on_event("startup")
    async def startup_event():
        await app.state.forum.initialize(bootstrap_admin=bootstrap_admin)

    return app


app = create_app()
