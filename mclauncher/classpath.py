import os
import pathlib
from typing import Iterable, List, Optional

from .errors import EmptyClasspath


def assemble_classpath(libraries: Iterable[pathlib.Path], client_jar: Optional[pathlib.Path],
                       separator: str = os.pathsep) -> str:
    """Joins library paths in resolution order, client jar last.

    The client jar goes last so that duplicated classes resolve to the libraries'
    copies. A library listed twice keeps its first position.
    """
    client_entry = str(client_jar) if client_jar is not None else None
    entries: List[str] = []
    seen = {client_entry}
    for path in libraries:
        entry = str(path)
        if entry in seen:
            continue
        seen.add(entry)
        entries.append(entry)
    if client_entry is not None:
        entries.append(client_entry)
    if not entries:
        raise EmptyClasspath()
    return separator.join(entries)
