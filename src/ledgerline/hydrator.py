from typing import Any, Callable, Dict, List, Optional, Tuple, Type, Union

Cast = Union[Callable[[Any], Any], Tuple[str, Callable[[Any], Any]]]


class Hydrator:
    """Object responsible for casting backend rows into models

    ``casts`` maps a column name to a callable converting its raw value.
    A ``(field, callable)`` pair also stores the value under another name.
    NULL values are never cast.
    """

    fallback: Type[Any] = dict
    """The model used when none is passed to the hydrate methods"""

    casts: Dict[str, Cast] = {}

    def one(
        self, row: Optional[Dict[str, Any]], model: Optional[Type[Any]] = None
    ) -> Any:
        if row is None:
            return None
        return self.hydrate(row, model)

    def many(
        self, rows: List[Dict[str, Any]], model: Optional[Type[Any]] = None
    ) -> List[Any]:
        return [self.hydrate(row, model) for row in rows]

    def hydrate(
        self, data: Dict[str, Any], model: Optional[Type[Any]] = None
    ) -> Any:
        """Perform casting operation

        Args:
            data (Dict[str, Any]): Raw row from the backend
            model (Type[Any], optional): The model that will receive the
                cast values as keyword arguments. Defaults to the
                hydrator's fallback.

        Returns:
            Any: The data cast into the model
        """
        values = {}
        for column, value in data.items():
            field, cast = self._lookup(column)
            values[field] = value if value is None else cast(value)
        model = model or self.fallback
        if model is dict:
            return values
        return model(**values)

    def _lookup(self, column: str) -> Tuple[str, Callable[[Any], Any]]:
        cast = self.casts.get(column)
        if cast is None:
            return column, _identity
        if isinstance(cast, tuple):
            return cast
        return column, cast


def _identity(value: Any) -> Any:
    return value
