from .edit_history import EditHistoryEntry

__all__ = [
	"EditHistoryEntry",
]
