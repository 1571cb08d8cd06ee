from cielo.state.store import FileStateStore, MemoryStateStore, StateStore, StateStoreError

__all__ = ["FileStateStore", "MemoryStateStore", "StateStore", "StateStoreError"]
