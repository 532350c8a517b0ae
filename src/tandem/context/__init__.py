from tandem.context.codebase import CodebaseContext, KeywordCodebaseContext, SearchResult

__all__ = ["CodebaseContext", "KeywordCodebaseContext", "SearchResult"]
