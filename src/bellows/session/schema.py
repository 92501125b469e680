from pydantic import BaseModel

from bellows.session.message import ModelRef


class Session(BaseModel):
    id: str
    title: str | None = None
    created_at: str
    updated_at: str
    model: ModelRef | None = None
    agent: str = "build"
