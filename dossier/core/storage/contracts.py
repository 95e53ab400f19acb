from typing import Any, Dict, List, Mapping, Protocol, Sequence, Union

QueryParams = Union[Sequence[Any], Mapping[str, Any]]


class QueryStore(Protocol):
    """
    Read-only, parameterized query service the evidence core depends on.
    """

    def fetch_all(self, sql: str, params: QueryParams = ()) -> List[Dict[str, Any]]:
        """
        Run one query and return every row as a column -> value dict.
        """
        ...
