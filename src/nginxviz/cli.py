import uvicorn

from nginxviz import config


def main():
    config.configure_logging()
    uvicorn.run(
        "nginxviz.app:app",
        host=config.HOST,
        port=config.PORT,
        reload=config.RELOAD,
        log_level=config.LOG_LEVEL,
    )


if __name__ == "__main__":
    main()
