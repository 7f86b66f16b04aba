"""
Shared fixtures for the hl7-recorder test suite
"""

import sys
from pathlib import Path

import pytest

# Add src to path for development
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from hl7_recorder.interfaces import Direction, Element, ElementType, Session  # noqa: E402
from hl7_recorder.session_store import SessionStore  # noqa: E402

MSH = "MSH|^~\\&|ANALYZER|LAB|LIS|HOSP|20240101120000||ORU^R01|1|P|2.5\r\n"


class FakeClock:
    """Epoch-ms clock that advances one millisecond per call"""

    def __init__(self, start: int = 1_700_000_000_000, step: int = 1):
        self.now = start
        self.step = step

    def __call__(self) -> int:
        value = self.now
        self.now += self.step
        return value


def make_session(session_id: str = "session-1000000-1", start_time: int = 1_000_000,
                 messages=(MSH,), **kwargs) -> Session:
    """A complete session with start, message and end elements"""
    elements = [Element.create(ElementType.START, Direction.DEVICE_TO_HOST, b'\x05', start_time)]
    for i, text in enumerate(messages):
        elements.append(Element.create(ElementType.MESSAGE, Direction.DEVICE_TO_HOST,
                                       text.encode('utf-8'), start_time + 1 + i))
    end_time = start_time + len(messages) + 1
    elements.append(Element.create(ElementType.END, Direction.DEVICE_TO_HOST, b'\x04', end_time))

    fields = dict(
        id=session_id,
        sequence_number=1,
        start_time=start_time,
        end_time=end_time,
        device_address='10.0.0.5',
        host_address='10.0.0.9',
        elements=elements,
        messages=list(messages),
        is_complete=True,
    )
    fields.update(kwargs)
    return Session(**fields)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path):
    s = SessionStore(tmp_path / 'sessions')
    s.initialize()
    return s
