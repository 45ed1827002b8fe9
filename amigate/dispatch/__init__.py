from amigate.dispatch.database_sink import DatabaseSink
from amigate.dispatch.dispatcher import Dispatcher, create_worker
from amigate.dispatch.file_sink import FileSink
from amigate.dispatch.worker import SinkWorker
