"""Code-intelligence subsystem, consumed through query/response only."""

from codeloop.workspace.query import (
    DefinitionQuery,
    QueryProcessor,
    Symbol,
    SymbolQuery,
    find_definitions,
    find_symbols,
)

__all__ = [
    "DefinitionQuery",
    "QueryProcessor",
    "Symbol",
    "SymbolQuery",
    "find_definitions",
    "find_symbols",
]
