from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    APP_NAME: str = "Module Cost Estimator"
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: list[str] = ["*"]

    # Formula engine
    FORMULA_CACHE_SIZE: int = 512
    MAX_FUNCTION_DEPTH: int = 32
    MAX_FORMULA_NESTING: int = 100   # parentheses, unary signs and powers
    MAX_FORMULA_DEPTH: int = 300     # AST height, long operator chains included
    COMPUTED_OUTPUT_DECIMALS: int = 2

    # Editor helpers
    SUGGESTION_LIMIT: int = 30
    RECENT_VARIABLES_LIMIT: int = 15

    # Quote defaults
    FIELD_SUMMARY_COUNT: int = 3
    DEFAULT_TAX_RATE: float = 0.10
    DEFAULT_MARKUP_PERCENT: float = 0.0

    class Config:
        env_file = ".env"


settings = Settings()
