"""
Account storage module for Bot Builder.
Keeps users, roles, saved projects and token balances in a JSON file.
Every read-modify-write runs under one asyncio lock.
"""
import asyncio
import json
import logging
import os
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles

from config import ACCOUNTS_FILE, STARTING_TOKENS
from errors import (
    AccountError, AccountExistsError, BalanceConflictError, InsufficientTokensError,
    ProjectLimitError, ProjectNotFoundError, UserNotFoundError, ValidationError,
)

logger = logging.getLogger(__name__)

ROLE_HIERARCHY = ["administrator", "staff", "premium", "user"]
DEFAULT_ROLE = "user"
PROJECT_LIMITS = {
    "administrator": 50,
    "staff": 50,
    "premium": 20,
    "user": 3,
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class UserAccount:
    id: str
    email: str
    username: str
    panel_user_id: Optional[str] = None
    roles: List[str] = field(default_factory=lambda: [DEFAULT_ROLE])
    tokens: int = STARTING_TOKENS
    created_at: str = field(default_factory=_now)
    last_login: str = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BotProject:
    id: str
    user_id: str
    name: str
    description: str = ""
    code: str = ""
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _check_project_fields(**fields: Any):
    wrong = sorted(key for key, value in fields.items() if not isinstance(value, str))
    if wrong:
        raise ValidationError(f"Fields must be strings: {', '.join(wrong)}", wrong)


def highest_role(roles: List[str]) -> str:
    """Most privileged role in the list, `user` when none is recognised."""
    for role in ROLE_HIERARCHY:
        if role in roles:
            return role
    return DEFAULT_ROLE


class AccountStore:
    """JSON-file backed users, roles, projects and token balances."""

    def __init__(self, path: Path = ACCOUNTS_FILE, starting_tokens: int = STARTING_TOKENS):
        self.path = Path(path)
        self.starting_tokens = starting_tokens
        self._lock = asyncio.Lock()
        self._users: Dict[str, UserAccount] = {}
        self._projects: Dict[str, BotProject] = {}
        self._load()
        logger.info(f"AccountStore initialized with {len(self._users)} users from {self.path}")

    def _load(self):
        if not self.path.exists():
            return
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load accounts from {self.path}: {e}")
            raise AccountError(f"Account data at {self.path} is unreadable") from e
        self._users = {uid: UserAccount(**user) for uid, user in data.get("users", {}).items()}
        self._projects = {pid: BotProject(**project) for pid, project in data.get("projects", {}).items()}

    async def _save(self):
        """Write the whole store atomically. Caller must hold the lock."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "users": {uid: user.to_dict() for uid, user in self._users.items()},
            "projects": {pid: project.to_dict() for pid, project in self._projects.items()},
        }
        tmp_path = self.path.with_suffix(".tmp")
        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
            await f.write(json.dumps(payload, indent=2))
        os.replace(tmp_path, self.path)

    def _require_user(self, user_id: str) -> UserAccount:
        user = self._users.get(str(user_id))
        if not user:
            raise UserNotFoundError(f"User {user_id} not found")
        return user

    def _require_project(self, user_id: str, project_id: str) -> BotProject:
        project = self._projects.get(project_id)
        if not project or project.user_id != str(user_id):
            raise ProjectNotFoundError(f"Project {project_id} not found")
        return project

    # -------- Users -------- #
    async def create_user(self, email: str, username: str, panel_user_id: Optional[str] = None,
                          user_id: Optional[str] = None) -> UserAccount:
        """
        Register a user with the default role and starting token balance.

        Args:
            email: Unique email address
            username: Display name
            panel_user_id: Hosting panel account id, if one was created
            user_id: Explicit id, generated when omitted

        Returns:
            UserAccount: The stored user
        """
        if not email or not username:
            raise ValidationError("Email and username are required")
        async with self._lock:
            email = email.lower()
            if self.find_user_by_email(email):
                raise AccountExistsError("A user with this email already exists")
            user = UserAccount(
                id=user_id or uuid.uuid4().hex,
                email=email,
                username=username,
                panel_user_id=str(panel_user_id) if panel_user_id is not None else None,
                tokens=self.starting_tokens,
            )
            self._users[user.id] = user
            await self._save()
        logger.info(f"Created user {user.id} ({username}) with {user.tokens} tokens")
        return user

    def get_user(self, user_id: str) -> Optional[UserAccount]:
        return self._users.get(str(user_id))

    def find_user_by_email(self, email: str) -> Optional[UserAccount]:
        email = (email or "").lower()
        for user in self._users.values():
            if user.email == email:
                return user
        return None

    async def touch_login(self, user_id: str) -> UserAccount:
        async with self._lock:
            user = self._require_user(user_id)
            user.last_login = _now()
            await self._save()
            return user

    # -------- Roles -------- #
    def get_role(self, user_id: str) -> str:
        """Highest role held by a user; unknown users are plain users."""
        user = self.get_user(user_id)
        return highest_role(user.roles) if user else DEFAULT_ROLE

    async def assign_role(self, user_id: str, role: str) -> UserAccount:
        if role not in ROLE_HIERARCHY:
            raise ValidationError(f"Unknown role: {role}")
        async with self._lock:
            user = self._require_user(user_id)
            if role not in user.roles:
                user.roles.append(role)
                await self._save()
        logger.info(f"Assigned role {role} to user {user_id}")
        return user

    def max_projects(self, user_id: str) -> int:
        return PROJECT_LIMITS[self.get_role(user_id)]

    # -------- Projects -------- #
    async def create_project(self, user_id: str, name: str, description: str = "", code: str = "") -> BotProject:
        """
        Save a new project for a user.

        Raises:
            ProjectLimitError: The user already has as many projects as their role allows
        """
        _check_project_fields(name=name, description=description, code=code)
        if not name.strip():
            raise ValidationError("Project name is required")
        async with self._lock:
            self._require_user(user_id)
            limit = self.max_projects(user_id)
            if len(self.list_projects(user_id)) >= limit:
                raise ProjectLimitError(
                    f"Project limit reached ({limit}). Upgrade your role to save more projects.",
                    {"limit": limit})
            project = BotProject(id=uuid.uuid4().hex, user_id=str(user_id), name=name.strip(),
                                 description=description, code=code)
            self._projects[project.id] = project
            await self._save()
        logger.info(f"User {user_id} saved project {project.id}")
        return project

    def list_projects(self, user_id: str) -> List[BotProject]:
        """User's projects, most recently updated first."""
        projects = [p for p in self._projects.values() if p.user_id == str(user_id)]
        return sorted(projects, key=lambda p: p.updated_at, reverse=True)

    def get_project(self, user_id: str, project_id: str) -> BotProject:
        return self._require_project(user_id, project_id)

    async def update_project(self, user_id: str, project_id: str, **changes) -> BotProject:
        allowed = {"name", "description", "code"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")
        _check_project_fields(**changes)
        if "name" in changes and not changes["name"].strip():
            raise ValidationError("Project name is required")
        async with self._lock:
            project = self._require_project(user_id, project_id)
            for key, value in changes.items():
                setattr(project, key, value)
            project.updated_at = _now()
            await self._save()
            return project

    async def delete_project(self, user_id: str, project_id: str) -> None:
        async with self._lock:
            self._require_project(user_id, project_id)
            del self._projects[project_id]
            await self._save()
        logger.info(f"User {user_id} deleted project {project_id}")

    # -------- Tokens -------- #
    def get_token_balance(self, user_id: str) -> int:
        return self._require_user(user_id).tokens

    async def debit_tokens(self, user_id: str, amount: int, expected_balance: Optional[int] = None,
                           floor_at_zero: bool = False) -> int:
        """
        Atomically subtract tokens from a user's balance.

        Args:
            user_id: User to charge
            amount: Non-negative number of tokens
            expected_balance: When given, the debit only applies if the
                current balance still equals it
            floor_at_zero: Clamp at zero instead of refusing an overdraft

        Returns:
            int: The new balance
        """
        if amount < 0:
            raise ValidationError("Token amount must not be negative")
        async with self._lock:
            user = self._require_user(user_id)
            if expected_balance is not None and user.tokens != expected_balance:
                raise BalanceConflictError(
                    "Token balance changed during the request. Please try again.",
                    {"expected": expected_balance, "actual": user.tokens})
            if user.tokens < amount and not floor_at_zero:
                raise InsufficientTokensError(
                    f"Insufficient tokens: {amount} required, {user.tokens} available",
                    {"required": amount, "available": user.tokens})
            user.tokens = max(0, user.tokens - amount)
            await self._save()
            balance = user.tokens
        logger.info(f"Debited {amount} tokens from user {user_id}, balance {balance}")
        return balance
