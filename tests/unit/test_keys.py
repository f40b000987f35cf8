from __future__ import annotations

import dataclasses

import pytest
import sqlalchemy as sa

from sqla_relations import (
    BaseModel,
    MissingForeignKeyError,
    MissingLocalKeyError,
    column,
    foreign_key_for,
    has_many,
    has_many_through,
    has_one,
    many_to_many,
)
from sqla_relations.keys import pivot_table_for

from ..models import Country, Post, Role, User


class TestBootErrors:
    def test_missing_local_key(self, base: type[BaseModel]) -> None:
        class Post(base):  # type: ignore[valid-type,misc]
            __tablename__ = "posts"

        class User(base):  # type: ignore[valid-type,misc]
            __tablename__ = "users"

            posts = has_many(lambda: Post)

        with pytest.raises(MissingLocalKeyError) as exc_info:
            User.get_relation("posts").boot()

        assert str(exc_info.value) == (
            "E_MISSING_RELATED_LOCAL_KEY: User.id required by User.posts relation is missing"
        )
        assert exc_info.value.model == "User"
        assert exc_info.value.key == "id"

    def test_missing_foreign_key(self, base: type[BaseModel]) -> None:
        class Post(base):  # type: ignore[valid-type,misc]
            __tablename__ = "posts"

        class User(base):  # type: ignore[valid-type,misc]
            __tablename__ = "users"

            id = column(sa.Integer, primary=True)
            posts = has_many(lambda: Post)

        with pytest.raises(MissingForeignKeyError) as exc_info:
            User.get_relation("posts").boot()

        assert str(exc_info.value) == (
            "E_MISSING_RELATED_FOREIGN_KEY: Post.user_id required by User.posts relation is missing"
        )
        assert exc_info.value.model == "Post"

    def test_missing_explicit_local_key(self, base: type[BaseModel]) -> None:
        class Post(base):  # type: ignore[valid-type,misc]
            __tablename__ = "posts"

            user_id = column(sa.Integer)

        class User(base):  # type: ignore[valid-type,misc]
            __tablename__ = "users"

            id = column(sa.Integer, primary=True)
            posts = has_many(lambda: Post, local_key="uid")

        with pytest.raises(MissingLocalKeyError, match=r"User\.uid required by User\.posts"):
            User.get_relation("posts").boot()

    def test_missing_through_keys(self, base: type[BaseModel]) -> None:
        class Post(base):  # type: ignore[valid-type,misc]
            __tablename__ = "posts"

            id = column(sa.Integer, primary=True)

        class Author(base):  # type: ignore[valid-type,misc]
            __tablename__ = "authors"

            id = column(sa.Integer, primary=True)
            country_id = column(sa.Integer)

        class Country(base):  # type: ignore[valid-type,misc]
            __tablename__ = "countries"

            id = column(sa.Integer, primary=True)
            posts = has_many_through(lambda: Post, lambda: Author)

        with pytest.raises(MissingForeignKeyError, match=r"Post\.author_id required by Country\.posts"):
            Country.get_relation("posts").boot()

    def test_missing_key_on_through_model(self, base: type[BaseModel]) -> None:
        class Post(base):  # type: ignore[valid-type,misc]
            __tablename__ = "posts"

            id = column(sa.Integer, primary=True)
            author_id = column(sa.Integer)

        class Author(base):  # type: ignore[valid-type,misc]
            __tablename__ = "authors"

            id = column(sa.Integer, primary=True)

        class Country(base):  # type: ignore[valid-type,misc]
            __tablename__ = "countries"

            id = column(sa.Integer, primary=True)
            posts = has_many_through(lambda: Post, lambda: Author)

        with pytest.raises(MissingForeignKeyError, match=r"Author\.country_id required"):
            Country.get_relation("posts").boot()

    def test_failed_boot_can_be_retried(self, base: type[BaseModel]) -> None:
        class Post(base):  # type: ignore[valid-type,misc]
            __tablename__ = "posts"

        class User(base):  # type: ignore[valid-type,misc]
            __tablename__ = "users"

            id = column(sa.Integer, primary=True)
            posts = has_many(lambda: Post)

        relation = User.get_relation("posts")
        with pytest.raises(MissingForeignKeyError):
            relation.boot()

        assert not relation.booted


class TestHasManyKeys:
    def test_primary_key_is_local_key(self, base: type[BaseModel]) -> None:
        class Post(base):  # type: ignore[valid-type,misc]
            __tablename__ = "posts"

            user_id = column(sa.Integer)

        class User(base):  # type: ignore[valid-type,misc]
            __tablename__ = "users"

            id = column(sa.Integer, primary=True)
            posts = has_many(lambda: Post)

        relation = User.get_relation("posts")
        relation.boot()

        assert relation.local_key == "id"
        assert relation.local_adapter_key == "id"

    def test_custom_local_key_with_storage_column(self, base: type[BaseModel]) -> None:
        class Post(base):  # type: ignore[valid-type,misc]
            __tablename__ = "posts"

            user_id = column(sa.Integer)

        class User(base):  # type: ignore[valid-type,misc]
            __tablename__ = "users"

            id = column(sa.Integer, primary=True)
            uid = column(sa.Integer, name="user_uid")
            posts = has_many(lambda: Post, local_key="uid")

        relation = User.get_relation("posts")

        assert relation.local_key == "uid"
        assert relation.local_adapter_key == "user_uid"

    def test_foreign_key_from_model_name_and_primary_key(self, base: type[BaseModel]) -> None:
        class Post(base):  # type: ignore[valid-type,misc]
            __tablename__ = "posts"

            user_id = column(sa.Integer)

        class User(base):  # type: ignore[valid-type,misc]
            __tablename__ = "users"

            id = column(sa.Integer, primary=True)
            posts = has_many(lambda: Post)

        relation = User.get_relation("posts")

        assert relation.foreign_key == "user_id"
        assert relation.foreign_adapter_key == "user_id"

    def test_explicit_foreign_key_with_storage_column(self, base: type[BaseModel]) -> None:
        class Post(base):  # type: ignore[valid-type,misc]
            __tablename__ = "posts"

            user_uid = column(sa.Integer, name="user_id")

        class User(base):  # type: ignore[valid-type,misc]
            __tablename__ = "users"

            id = column(sa.Integer, primary=True)
            posts = has_many(lambda: Post, foreign_key="user_uid")

        relation = User.get_relation("posts")

        assert relation.foreign_key == "user_uid"
        assert relation.foreign_adapter_key == "user_id"

    def test_convention_follows_custom_primary_key(self, base: type[BaseModel]) -> None:
        class BlogPost(base):  # type: ignore[valid-type,misc]
            __tablename__ = "blog_posts"

            uuid = column(sa.String(36), primary=True)

        assert foreign_key_for(BlogPost) == "blog_post_uuid"

    def test_boot_is_idempotent(self) -> None:
        relation = User.get_relation("posts")
        relation.boot()
        definition = relation.definition
        relation.boot()

        assert relation.definition is definition

    def test_definition_is_immutable(self) -> None:
        definition = User.get_relation("posts").definition

        with pytest.raises(dataclasses.FrozenInstanceError):
            definition.foreign_key = "author_id"  # type: ignore[misc]

    def test_has_one_uses_has_many_conventions(self, base: type[BaseModel]) -> None:
        class Profile(base):  # type: ignore[valid-type,misc]
            __tablename__ = "profiles"

            user_id = column(sa.Integer)

        class User(base):  # type: ignore[valid-type,misc]
            __tablename__ = "users"

            id = column(sa.Integer, primary=True)
            profile = has_one(lambda: Profile)

        relation = User.get_relation("profile")

        assert (relation.local_key, relation.foreign_key) == ("id", "user_id")


class TestManyToManyKeys:
    def test_defaults(self, base: type[BaseModel]) -> None:
        class Skill(base):  # type: ignore[valid-type,misc]
            __tablename__ = "skills"

            id = column(sa.Integer, primary=True)

        class User(base):  # type: ignore[valid-type,misc]
            __tablename__ = "users"

            id = column(sa.Integer, primary=True)
            skills = many_to_many(lambda: Skill)

        relation = User.get_relation("skills")

        assert relation.local_key == "id"
        assert relation.related_key == "id"
        assert relation.pivot_table == "skill_user"
        assert relation.pivot_local_key == "user_id"
        assert relation.pivot_foreign_key == "skill_id"

    def test_declared_pivot(self) -> None:
        relation = User.get_relation("roles")

        assert relation.pivot_table == "user_roles"
        assert relation.pivot.c.user_id is not None

    def test_pivot_table_name_is_sorted(self) -> None:
        assert pivot_table_for(User, Role) == pivot_table_for(Role, User) == "role_user"

    def test_missing_related_key(self, base: type[BaseModel]) -> None:
        class Skill(base):  # type: ignore[valid-type,misc]
            __tablename__ = "skills"

        class User(base):  # type: ignore[valid-type,misc]
            __tablename__ = "users"

            id = column(sa.Integer, primary=True)
            skills = many_to_many(lambda: Skill)

        with pytest.raises(MissingForeignKeyError, match=r"Skill\.id required by User\.skills"):
            User.get_relation("skills").boot()

    def test_missing_declared_pivot_key(self, base: type[BaseModel]) -> None:
        sa.Table(
            "role_user",
            base.metadata,
            sa.Column("user_id", sa.Integer),
            sa.Column("role_id", sa.Integer),
        )

        class Role(base):  # type: ignore[valid-type,misc]
            __tablename__ = "roles"

            id = column(sa.Integer, primary=True)

        class User(base):  # type: ignore[valid-type,misc]
            __tablename__ = "users"

            id = column(sa.Integer, primary=True)
            roles = many_to_many(lambda: Role, pivot_local_key="member_id")

        with pytest.raises(MissingForeignKeyError) as exc_info:
            User.get_relation("roles").boot()

        assert str(exc_info.value) == (
            "E_MISSING_RELATED_FOREIGN_KEY: "
            "role_user.member_id required by User.roles relation is missing"
        )
        assert exc_info.value.model == "role_user"

    def test_missing_declared_pivot_foreign_key(self, base: type[BaseModel]) -> None:
        sa.Table(
            "role_user",
            base.metadata,
            sa.Column("user_id", sa.Integer),
            sa.Column("role_id", sa.Integer),
        )

        class Role(base):  # type: ignore[valid-type,misc]
            __tablename__ = "roles"

            id = column(sa.Integer, primary=True)

        class User(base):  # type: ignore[valid-type,misc]
            __tablename__ = "users"

            id = column(sa.Integer, primary=True)
            roles = many_to_many(lambda: Role, pivot_foreign_key="group_id")

        with pytest.raises(MissingForeignKeyError, match=r"role_user\.group_id required by User\.roles"):
            User.get_relation("roles").boot()


class TestHasManyThroughKeys:
    def test_defaults(self) -> None:
        relation = Country.get_relation("posts")

        assert relation.from_key == "id"
        assert relation.to_key == "country_id"
        assert relation.via_key == "id"
        assert relation.via_foreign_key == "user_id"

    def test_definition_names_through_model(self) -> None:
        definition = Country.get_relation("posts").definition

        assert definition.through_model is User
        assert definition.related_model is Post
