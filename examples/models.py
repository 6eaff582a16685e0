from __future__ import annotations

from sqla_repository import Column, ManyToMany, ManyToOne, OneToMany, OneToOne, entity


@entity("users")
class User:
    id = Column(type="number", primary=True)
    name = Column()
    age = Column(type="number")
    deleted_at = Column(type="date", soft_delete=True)

    posts = OneToMany(lambda: Post, inverse_side="author")
    profile = OneToOne(lambda: Profile, foreign_key="id", local_key="user_id")
    roles = ManyToMany(
        lambda: Role,
        join_table_name="user_roles",
        join_column_name="user_id",
        inverse_join_column_name="role_id",
    )


@entity("posts", soft_delete=True)
class Post:
    id = Column(type="number", primary=True)
    title = Column()
    published = Column(type="boolean")
    author_id = Column(type="number")

    author = ManyToOne(lambda: User, foreign_key="author_id")
    comments = OneToMany(lambda: Comment, inverse_side="post")


@entity("comments")
class Comment:
    id = Column(type="number", primary=True)
    text = Column()
    post_id = Column(type="number")

    post = ManyToOne(lambda: Post)


@entity("profiles")
class Profile:
    id = Column(type="number", primary=True)
    bio = Column()
    user_id = Column(type="number")


@entity("roles")
class Role:
    id = Column(type="number", primary=True)
    name = Column()
    level = Column(type="number")
