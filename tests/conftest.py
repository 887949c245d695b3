from __future__ import annotations

import os
from collections.abc import AsyncIterator, Iterator
from datetime import datetime, timezone

import pytest
from sqlalchemy.ext.asyncio import (
    AsyncConnection,
    AsyncEngine,
    AsyncSession,
    create_async_engine,
)

from sqla_joins import sqla_cache_clear
from sqla_joins.node import Node, get_node, init_node

from .models import (
    Attachment,
    Base,
    Category,
    Comment,
    Country,
    Message,
    Post,
    PostTag,
    Profile,
    Reaction,
    Role,
    Tag,
    User,
    user_roles,
)


DELETED_AT = datetime(2024, 1, 1, tzinfo=timezone.utc)

pytestmark = pytest.mark.anyio


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--db",
        default="sqlite",
        choices=["postgres", "mysql", "mariadb", "sqlite"],
        help="Database backend to test against",
    )


@pytest.fixture(scope="session")
def db_backend(request: pytest.FixtureRequest) -> str:
    value: str = request.config.getoption("--db")

    return value


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(scope="session", autouse=True)
def _init_node() -> None:
    """Initialize the Node singleton with model relationships.

    Sync, no DB needed -- safe to run for all tests including unit tests.
    """
    try:
        Node()
    except RuntimeError:
        Node.reset()
        init_node(get_node(Base))


@pytest.fixture(scope="session")
def db_config(db_backend: str, tmp_path_factory: pytest.TempPathFactory) -> Iterator[str]:
    match db_backend:
        case "postgres":
            from testcontainers.postgres import PostgresContainer

            pg = PostgresContainer(image="postgres:latest")
            if os.name == "nt":
                pg.get_container_host_ip = lambda: "127.0.0.1"
            with pg:
                host = pg.get_container_host_ip()
                dsn = (
                    f"postgresql+asyncpg://{pg.username}:{pg.password}"
                    f"@{host}:{pg.get_exposed_port(pg.port)}/{pg.dbname}"
                )
                yield dsn

        case "mysql":
            from testcontainers.mysql import MySqlContainer

            my = MySqlContainer(image="mysql:8.0")
            if os.name == "nt":
                my.get_container_host_ip = lambda: "127.0.0.1"
            with my:
                host = my.get_container_host_ip()
                port = my.get_exposed_port(my.port)
                dsn = (
                    f"mysql+asyncmy://{my.username}:{my.password}"
                    f"@{host}:{port}/{my.dbname}"
                )
                yield dsn

        case "mariadb":
            from testcontainers.mysql import MySqlContainer as MariaDBContainer

            ma = MariaDBContainer(image="mariadb:latest")
            if os.name == "nt":
                ma.get_container_host_ip = lambda: "127.0.0.1"
            with ma:
                host = ma.get_container_host_ip()
                port = ma.get_exposed_port(ma.port)
                dsn = (
                    f"mysql+asyncmy://{ma.username}:{ma.password}"
                    f"@{host}:{port}/{ma.dbname}"
                )
                yield dsn

        case "sqlite":
            tmp = tmp_path_factory.mktemp("db")
            yield f"sqlite+aiosqlite:///{tmp}/test.db"


@pytest.fixture(scope="session")
def engine(db_config: str) -> AsyncEngine:
    return create_async_engine(db_config, echo=False)


@pytest.fixture(scope="session")
async def _create_tables(engine: AsyncEngine) -> AsyncIterator[None]:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
async def connection(
    engine: AsyncEngine, _create_tables: None
) -> AsyncIterator[AsyncConnection]:
    async with engine.connect() as conn:
        trans = await conn.begin()
        yield conn
        await trans.rollback()


@pytest.fixture
async def session(connection: AsyncConnection) -> AsyncIterator[AsyncSession]:
    sess = AsyncSession(bind=connection, expire_on_commit=False)
    yield sess
    await sess.close()


@pytest.fixture
async def seed_data(session: AsyncSession) -> dict[str, list[Base]]:
    france = Country(id=1, name="France")
    japan = Country(id=2, name="Japan")
    session.add_all([france, japan])
    await session.flush()

    alice = User(id=1, name="alice", active=True, country_id=1)
    bob = User(id=2, name="bob", active=True, country_id=1)
    charlie = User(id=3, name="charlie", active=False, country_id=2)
    dan = User(id=4, name="dan", active=True, country_id=2, deleted_at=DELETED_AT)
    session.add_all([alice, bob, charlie, dan])
    await session.flush()

    post1 = Post(id=1, title="Alice Post 1", body="body1", author_id=1)
    post2 = Post(id=2, title="Alice Post 2", body="body2", author_id=1, published=False)
    post3 = Post(id=3, title="Alice Post 3", body="body3", author_id=1, deleted_at=DELETED_AT)
    post4 = Post(id=4, title="Bob Post 1", body="body4", author_id=2)
    post5 = Post(id=5, title="Dan Post 1", body="body5", author_id=4)
    session.add_all([post1, post2, post3, post4, post5])
    await session.flush()

    tag_python = Tag(id=1, name="python")
    tag_sqlalchemy = Tag(id=2, name="sqlalchemy")
    tag_testing = Tag(id=3, name="testing")
    session.add_all([tag_python, tag_sqlalchemy, tag_testing])
    await session.flush()

    session.add_all([
        PostTag(post_id=1, tag_id=1),
        PostTag(post_id=1, tag_id=2),
        PostTag(post_id=2, tag_id=1),
        PostTag(post_id=4, tag_id=3),
    ])
    await session.flush()

    comment1 = Comment(id=1, text="Great post!", post_id=1)
    comment2 = Comment(id=2, text="Nice work", post_id=1)
    session.add_all([comment1, comment2])
    await session.flush()

    reaction1 = Reaction(id=1, emoji="\U0001f44d", comment_id=1)
    reaction2 = Reaction(id=2, emoji="❤️", comment_id=1)
    session.add_all([reaction1, reaction2])
    await session.flush()

    admin = Role(id=1, name="admin", level=10)
    editor = Role(id=2, name="editor", level=5)
    viewer = Role(id=3, name="viewer", level=1)
    legacy = Role(id=4, name="legacy", level=0, deleted_at=DELETED_AT)
    session.add_all([admin, editor, viewer, legacy])
    await session.flush()

    await session.execute(
        user_roles.insert().values([
            {"user_id": 1, "role_id": 1, "is_primary": True},
            {"user_id": 1, "role_id": 2, "is_primary": False},
            {"user_id": 1, "role_id": 4, "is_primary": False},
            {"user_id": 2, "role_id": 2, "is_primary": True},
            {"user_id": 2, "role_id": 3, "is_primary": False},
        ])
    )
    await session.flush()

    root = Category(id=1, name="root", parent_id=None)
    child1 = Category(id=2, name="child_1", parent_id=1)
    child2 = Category(id=3, name="child_2", parent_id=1)
    grandchild = Category(id=4, name="grandchild", parent_id=2)
    session.add_all([root, child1, child2, grandchild])
    await session.flush()

    msg1 = Message(id=1, content="Hello Bob", from_user_id=1, to_user_id=2)
    msg2 = Message(id=2, content="Hi Alice", from_user_id=2, to_user_id=1)
    msg3 = Message(id=3, content="Hey Charlie", from_user_id=1, to_user_id=3)
    session.add_all([msg1, msg2, msg3])
    await session.flush()

    profile_alice = Profile(id=1, bio="Alice bio", user_id=1)
    profile_bob = Profile(id=2, bio="Bob bio", user_id=2)
    session.add_all([profile_alice, profile_bob])
    await session.flush()

    # post 1 and comment 1 share id 1; only attachable_type tells them apart
    att1 = Attachment(
        id=1, url="https://example.com/post1_img1.jpg", attachable_type="post", attachable_id=1
    )
    att2 = Attachment(
        id=2, url="https://example.com/post1_img2.jpg", attachable_type="post", attachable_id=1
    )
    att3 = Attachment(
        id=3,
        url="https://example.com/comment1_file.pdf",
        attachable_type="comment",
        attachable_id=1,
    )
    att4 = Attachment(
        id=4, url="https://example.com/alice.jpg", attachable_type="user", attachable_id=1
    )
    session.add_all([att1, att2, att3, att4])
    await session.flush()

    session.expunge_all()

    return {
        "countries": [france, japan],
        "users": [alice, bob, charlie, dan],
        "posts": [post1, post2, post3, post4, post5],
        "comments": [comment1, comment2],
        "reactions": [reaction1, reaction2],
        "roles": [admin, editor, viewer, legacy],
        "categories": [root, child1, child2, grandchild],
        "messages": [msg1, msg2, msg3],
        "tags": [tag_python, tag_sqlalchemy, tag_testing],
        "profiles": [profile_alice, profile_bob],
        "attachments": [att1, att2, att3, att4],
    }



@pytest.fixture(autouse=True)
def clear_lru_caches() -> Iterator[None]:
    yield
    sqla_cache_clear()


@pytest.fixture
def reset_node_singleton() -> Iterator[None]:
    saved = Node._Node__instance  # type: ignore[attr-defined]
    yield
    Node._Node__instance = saved  # type: ignore[attr-defined]

