import logging
import sys

HANDLER_NAME = "shopflow-stdout"


def setup_logging(level: str = "INFO") -> None:
    """
    ルート logger に stdout ハンドラを1つだけ設定する。
    uvicorn のリロードや lifespan の再実行で二重出力にならないよう、
    以前に設定したハンドラは付け替える。
    """
    root = logging.getLogger()
    root.setLevel(level.upper())

    for h in list(root.handlers):
        if h.get_name() == HANDLER_NAME:
            root.removeHandler(h)

    handler = logging.StreamHandler(sys.stdout)
    handler.set_name(HANDLER_NAME)
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")
    )
    root.addHandler(handler)

    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if level.upper() == "DEBUG" else logging.WARNING
    )
