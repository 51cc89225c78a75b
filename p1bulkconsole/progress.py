# PingOne Bulk Console - Progress Channel
# Last Update: October 19, 2026

import json
import queue
import threading

from p1bulkconsole.logs import infoLogger
from p1bulkconsole.models import connectedEvent, terminalEventTypes


def formatEvent(event):
    # One server-sent event frame
    return f"data: {json.dumps(event)}\n\n"


keepAliveFrame = ": keep-alive\n\n"


class Subscription:
    # *********
    # The single consumer side of one operation's progress stream.
    # *********

    def __init__(self, channel, operationId):
        self.channel = channel
        self.operationId = operationId
        self.eventQueue = queue.Queue()
        self.closed = False

    def deliver(self, event):
        if not self.closed:
            self.eventQueue.put(event)

    def close(self):
        if self.closed:
            return
        self.closed = True
        # Wake a reader blocked on the queue
        self.eventQueue.put(None)
        self.channel.unsubscribe(self)

    def events(self, keepAliveSeconds=15):
        #######
        # Yield events until a terminal event or close()
        # None is yielded after keepAliveSeconds without an event so the caller can ping the browser
        #######

        yield connectedEvent(self.operationId)
        try:
            while not self.closed:
                try:
                    event = self.eventQueue.get(timeout=keepAliveSeconds)
                except queue.Empty:
                    yield None
                    continue
                if event is None:
                    break
                yield event
                if event.get("type") in terminalEventTypes:
                    break
        finally:
            self.close()


class ProgressChannel:
    # *********
    # Routes progress events to the one subscriber attached to each operation id.
    # Events published while nobody is subscribed are dropped.
    # *********

    def __init__(self):
        self.subscribers = {}
        self.lastCurrent = {}
        self.channelLock = threading.Lock()

    def subscribe(self, operationId):
        subscription = Subscription(self, operationId)
        with self.channelLock:
            previous = self.subscribers.get(operationId)
            self.subscribers[operationId] = subscription
        if previous is not None:
            infoLogger.info(f"Replacing progress subscriber for operation {operationId}.")
            previous.closed = True
            previous.eventQueue.put(None)
        infoLogger.info(f"Progress subscriber attached for operation {operationId}.")
        return subscription

    def unsubscribe(self, subscription):
        with self.channelLock:
            if self.subscribers.get(subscription.operationId) is subscription:
                del self.subscribers[subscription.operationId]
                infoLogger.info(f"Progress subscriber detached for operation {subscription.operationId}.")

    def hasSubscriber(self, operationId):
        with self.channelLock:
            return operationId in self.subscribers

    def publish(self, operationId, event):
        #######
        # Push one event to the operation's subscriber, returns False when it was dropped
        #######

        with self.channelLock:
            current = event.get("current")
            if current is not None:
                if current < self.lastCurrent.get(operationId, 0):
                    # Never let a subscriber see current go backwards
                    return False
                self.lastCurrent[operationId] = current
            if event.get("type") in terminalEventTypes:
                self.lastCurrent.pop(operationId, None)
            subscription = self.subscribers.get(operationId)
            if subscription is None:
                return False
            subscription.deliver(event)
            return True
