from services.llm.router import llm_router

__all__ = ["llm_router"]
