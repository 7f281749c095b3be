from arbrebio.models.newsletter_subscriber import NewsletterSubscriber, SubscriberStatus
