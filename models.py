import re
from typing import Any, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, EmailStr, field_validator

from config import (BAN_REASON_MAX_LENGTH, CATEGORY_DESCRIPTION_MAX_LENGTH, CATEGORY_NAME_MAX_LENGTH,
                    CATEGORY_NAME_MIN_LENGTH, PASSWORD_MAX_LENGTH, PASSWORD_MIN_LENGTH,
                    POST_CONTENT_MAX_LENGTH, POST_CONTENT_MIN_LENGTH, THREAD_CONTENT_MAX_LENGTH,
                    THREAD_CONTENT_MIN_LENGTH, THREAD_TITLE_MAX_LENGTH, THREAD_TITLE_MIN_LENGTH,
                    USERNAME_MAX_LENGTH, USERNAME_MIN_LENGTH)
from pagination import PageResult
from search import highlight_text
from users import Role, UserStatus

T = TypeVar("T")


def _check_length(value: str, minimum: int, maximum: int, what: str) -> str:
    if len(value.strip()) < minimum or len(value) > maximum:
        raise ValueError(f'{what} must be {minimum}-{maximum} characters')
    return value


def _title(v):
    return _check_length(v, THREAD_TITLE_MIN_LENGTH, THREAD_TITLE_MAX_LENGTH, 'Thread title')


def _thread_content(v):
    return _check_length(v, THREAD_CONTENT_MIN_LENGTH, THREAD_CONTENT_MAX_LENGTH, 'Thread content')


def _post_content(v):
    return _check_length(v, POST_CONTENT_MIN_LENGTH, POST_CONTENT_MAX_LENGTH, 'Content')


class UserRegister(BaseModel):
    username: str
    email: EmailStr
    password: str

    @field_validator('username')
    @classmethod
    def validate_username(cls, v):
        if len(v) < USERNAME_MIN_LENGTH or len(v) > USERNAME_MAX_LENGTH:
            raise ValueError(f'Username must be {USERNAME_MIN_LENGTH}-{USERNAME_MAX_LENGTH} characters')
        if not v.replace('_', '').replace('-', '').isalnum():
            raise ValueError('Username can only contain letters, numbers, hyphens, and underscores')
        return v

    @field_validator('password')
    @classmethod
    def validate_password(cls, v):
        if len(v) < PASSWORD_MIN_LENGTH or len(v) > PASSWORD_MAX_LENGTH:
            raise ValueError(f'Password must be {PASSWORD_MIN_LENGTH}-{PASSWORD_MAX_LENGTH} characters')
        if not re.search(r'[A-Z]', v):
            raise ValueError('Password must contain at least one uppercase letter')
        if not re.search(r'[a-z]', v):
            raise ValueError('Password must contain at least one lowercase letter')
        if not re.search(r'\d', v):
            raise ValueError('Password must contain at least one number')
        return v


class UserLogin(BaseModel):
    username: str
    password: str


class AccountDelete(BaseModel):
    password: str
    confirm_delete: bool

    @field_validator('confirm_delete')
    @classmethod
    def validate_confirm_delete(cls, v):
        if not v:
            raise ValueError('Account deletion must be confirmed')
        return v


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: int
    username: str
    email: str
    role: Role
    status: UserStatus
    is_admin: bool
    is_banned: bool
    ban_reason: Optional[str] = None
    banned_until: Optional[float] = None
    created_at: float
    last_activity: float
    thread_count: int = 0
    post_count: int = 0


class PublicUserResponse(BaseModel):
    """User as shown in search results, without contact details."""
    model_config = ConfigDict(from_attributes=True)

    user_id: int
    username: str
    role: Role
    is_banned: bool
    created_at: float
    thread_count: int = 0
    post_count: int = 0


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserResponse


class CategoryCreate(BaseModel):
    name: str
    description: str = ""
    color: Optional[str] = None

    @field_validator('name')
    @classmethod
    def validate_name(cls, v):
        return _check_length(v, CATEGORY_NAME_MIN_LENGTH, CATEGORY_NAME_MAX_LENGTH, 'Category name')

    @field_validator('description')
    @classmethod
    def validate_description(cls, v):
        if len(v) > CATEGORY_DESCRIPTION_MAX_LENGTH:
            raise ValueError(f'Description must be less than {CATEGORY_DESCRIPTION_MAX_LENGTH} characters')
        return v

    @field_validator('color')
    @classmethod
    def validate_color(cls, v):
        if v is not None and not re.fullmatch(r'#[0-9a-fA-F]{6}', v):
            raise ValueError('Color must be a hex value like #1a2b3c')
        return v


class CategoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    category_id: int
    name: str
    description: str
    color: Optional[str] = None
    thread_count: int = 0
    created_at: float


class ThreadCreate(BaseModel):
    title: str
    content: str
    category_ids: List[int] = []

    @field_validator('title')
    @classmethod
    def validate_title(cls, v):
        return _title(v)

    @field_validator('content')
    @classmethod
    def validate_content(cls, v):
        return _thread_content(v)


class ThreadEdit(BaseModel):
    title: Optional[str] = None
    content: Optional[str] = None
    expected_version: Optional[int] = None

    @field_validator('title')
    @classmethod
    def validate_title(cls, v):
        return v if v is None else _title(v)

    @field_validator('content')
    @classmethod
    def validate_content(cls, v):
        return v if v is None else _thread_content(v)


class ThreadResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    thread_id: int
    author_id: int
    author_name: Optional[str] = None
    title: str
    content: str
    is_locked: bool
    current_version: int
    post_count: int = 0
    category_ids: List[int] = []
    created_at: float
    updated_at: float


class ThreadLockUpdate(BaseModel):
    locked: bool = True


class PostCreate(BaseModel):
    content: str

    @field_validator('content')
    @classmethod
    def validate_content(cls, v):
        return _post_content(v)


class PostEdit(BaseModel):
    content: str
    expected_version: Optional[int] = None

    @field_validator('content')
    @classmethod
    def validate_content(cls, v):
        return _post_content(v)


class PostResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    post_id: int
    thread_id: int
    thread_title: Optional[str] = None
    author_id: int
    author_name: Optional[str] = None
    content: str
    current_version: int
    created_at: float
    updated_at: float


class RevisionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    entity_type: str
    entity_id: int
    version: int
    title: Optional[str] = None
    content: str
    editor_id: Optional[int] = None
    snapshot_at: float


class RoleUpdate(BaseModel):
    role: Role


class UserBan(BaseModel):
    reason: Optional[str] = None
    until: Optional[float] = None  # Epoch seconds, wins over duration
    duration: Optional[int] = None  # Duration in days, None for permanent

    @field_validator('reason')
    @classmethod
    def validate_reason(cls, v):
        if v is not None and len(v) > BAN_REASON_MAX_LENGTH:
            raise ValueError(f'Ban reason must be less than {BAN_REASON_MAX_LENGTH} characters')
        return v

    @field_validator('duration')
    @classmethod
    def validate_duration(cls, v):
        if v is not None and (v < 1 or v > 3650):  # Max 10 years
            raise ValueError('Ban duration must be between 1 and 3650 days')
        return v


class ModerationLogEntry(BaseModel):
    log_id: int
    moderator_id: int
    moderator_name: Optional[str] = None
    target_type: str
    target_id: int
    action: str
    reason: str = ""
    timestamp: float


class PageResponse(BaseModel, Generic[T]):
    items: List[T]
    total_count: int
    page: int
    page_size: int
    total_pages: int
    has_next: bool = False
    has_previous: bool = False

    @classmethod
    def from_result(cls, result: PageResult, item_model, convert=None) -> "PageResponse":
        convert = convert or item_model.model_validate
        return cls(
            items=[convert(item) for item in result.items],
            total_count=result.total_count,
            page=result.page,
            page_size=result.page_size,
            total_pages=result.total_pages,
            has_next=result.has_next,
            has_previous=result.has_previous,
        )


class ThreadSearchHit(ThreadResponse):
    highlighted_title: str = ""
    highlighted_content: str = ""

    @classmethod
    def from_thread(cls, thread, query: str) -> "ThreadSearchHit":
        hit = cls.model_validate(thread)
        hit.highlighted_title = highlight_text(thread.title, query)
        hit.highlighted_content = highlight_text(thread.content, query)
        return hit


class PostSearchHit(PostResponse):
    highlighted_content: str = ""

    @classmethod
    def from_post(cls, post, query: str) -> "PostSearchHit":
        hit = cls.model_validate(post)
        hit.highlighted_content = highlight_text(post.content, query)
        return hit


class SearchResponse(BaseModel):
    query: str
    threads: PageResponse[ThreadSearchHit]
    posts: PageResponse[PostSearchHit]
    users: PageResponse[PublicUserResponse]
    page: int
    page_size: int
    total_pages: int
    total_count: int


class SuggestionsResponse(BaseModel):
    threads: List[ThreadResponse]
    posts: List[PostResponse]
    users: List[PublicUserResponse]


class ProfileResponse(BaseModel):
    user: PublicUserResponse
    recent_threads: List[ThreadResponse]
    recent_posts: List[PostResponse]


class UserActivityResponse(BaseModel):
    user: UserResponse
    threads: List[ThreadResponse]
    posts: List[PostResponse]


class StatsResponse(BaseModel):
    user_count: int
    category_count: int
    locked_thread_count: int
    thread_count: int
    post_count: int


class ErrorResponse(BaseModel):
    error: str
    message: str
    details: Optional[Dict[str, Any]] = None
