from attachery.infrastructure.dispatch.thread import InlineDispatcher, ThreadDispatcher

__all__ = ["InlineDispatcher", "ThreadDispatcher"]
