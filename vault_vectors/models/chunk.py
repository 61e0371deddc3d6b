"""Text chunk model"""

from pydantic import BaseModel, Field


class TextChunk(BaseModel):
    """A bounded slice of a note, the unit an embedding is generated for"""

    chunk_id: str = Field(description="Identifier of the chunk within its note")
    text: str = Field(description="Chunk text")
    position: int = Field(ge=0, description="Position of the chunk within its note")
    token_count: int = Field(ge=0, description="Number of tokens in the chunk")
