from sqlmodel import Field, SQLModel


class Sequence(SQLModel, table=True):
    company_id: str = Field(primary_key=True, max_length=20)
    module_code: str = Field(primary_key=True, max_length=5)
    date_key: str = Field(primary_key=True, max_length=6)
    next_seq: int = Field(default=1)
