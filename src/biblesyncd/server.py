import socketserver
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

from biblesyncd import logging

logger = logging.get_logger("biblesyncd.http")


class ThreadingWSGIServer(socketserver.ThreadingMixIn, WSGIServer):
    daemon_threads = True


class RequestHandler(WSGIRequestHandler):
    def log_message(self, format, *args):
        logger.info("%s %s" % (self.address_string(), format % args))


def run_server(app, host, port):
    httpd = make_server(host, port, app, server_class=ThreadingWSGIServer, handler_class=RequestHandler)
    logger.info("Serving HTTP on {} port {}...".format(host, port))
    try:
        httpd.serve_forever()
    finally:
        httpd.server_close()
