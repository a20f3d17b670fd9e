"""Change data capture: tracked relations and consumer streams."""

from .models import ChangeEvent, ChangeKind, StreamState
from .changelog import ChangeLog, StreamWindow

__all__ = ['ChangeEvent', 'ChangeKind', 'StreamState', 'ChangeLog', 'StreamWindow']
