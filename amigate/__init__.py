"""
Пакет amigate собирает события Asterisk Manager Interface с нескольких серверов
и раскладывает их по файлам и базам данных согласно правилам (EventClause).

AMI must be enabled on every server, with an account allowed to read events,
in /etc/asterisk/manager.conf:

```
[general]
enabled = yes
webenabled = yes ; only needed for servers read with transport: http
bindaddr = 0.0.0.0

[gateway]
secret = s3cret
read = all   ; receive every event class
write = system   ; Ping and Logoff only
```

Servers are read over:
    - TCP (optionally TLS): TCPSession, the manager port 5038 / 5039
    - HTTP: HTTPSession, the /rawman endpoint of the Asterisk HTTP server

Run with ``python -m amigate config.yaml``; see amigate.settings for the format.

# License: Apache License 2.0
"""
__author__ = 'XpycTee'

from amigate.errors import (AuthError, ConfigurationError, FrameError, GatewayError, RuleEvaluationError,
                            SinkError, TransportError)
from amigate.gateway import Gateway
from amigate.models import (DatabaseDestination, DatabaseProfile, Event, FileDestination, ServerConfig,
                            SessionState)
from amigate.settings import Settings, load_settings
