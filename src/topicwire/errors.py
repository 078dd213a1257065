"""
Exceptions raised by topicwire.

Framing and transport errors are always fatal to the connection they occur
on. The byte stream can not be resynchronised once a frame has been
misread so no attempt is made to recover.
"""


class TopicwireError(Exception):
    """ Base class for all topicwire errors """


class BindError(TopicwireError):
    """ A server endpoint could not bind its listening socket """


class FramingError(TopicwireError):
    """ The byte stream does not contain a valid event frame """


class InvalidTopicEncoding(FramingError):
    pass


class TopicTooLong(FramingError):
    pass


class IncompleteLength(FramingError):
    pass


class IncompletePayload(FramingError):
    pass


class PayloadTooLarge(FramingError):
    pass


class TransportError(TopicwireError):
    """ The underlying transport failed or was reset """


class ReadTimeout(TransportError):
    pass
