def load_env_file() -> None:
    """Load environment variables from .env file if not already set.

    WHAT:
        Loads variables from a local .env file into os.environ.
        Does NOT overwrite existing environment variables.
    WHY:
        Lets developers keep DATABASE_URL / REDIS_URL in a local .env
        without risking overwriting deployment variables.
    """
    import logging
    from dotenv import load_dotenv

    logger = logging.getLogger(__name__)

    loaded = load_dotenv(override=False)

    if loaded:
        logger.info("Loaded local .env file (existing variables were NOT overwritten)")
    else:
        logger.debug("No local .env file found or loaded")
