from .openai import OpenAI

__all__ = ["OpenAI"]
