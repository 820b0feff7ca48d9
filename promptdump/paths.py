import os

DATA_DIR_ENV = "PROMPTDUMP_DATA_DIR"


def get_data_dir():
    base = os.environ.get(DATA_DIR_ENV, "").strip()
    if not base:
        base = os.path.join(os.path.expanduser("~"), ".promptdump")

    os.makedirs(base, exist_ok=True)
    return base


def get_db_path():
    return os.path.join(get_data_dir(), "promptdump.db")


def get_local_storage_path():
    return os.path.join(get_data_dir(), "local_storage.db")


def get_uploads_dir():
    uploads = os.path.join(get_data_dir(), "uploads")
    os.makedirs(uploads, exist_ok=True)
    return uploads
